"""
Structured table builder.

Reconciles noisy spreadsheet grids into a canonical shape per table family.
Spreadsheets keep formula-derived totals blank, repeat legacy total rows and
shift columns; the builder never fails on such input. Malformed rows degrade
to zero-filled cells and an empty table becomes a single placeholder row, so
every output row has exactly `col_count` cells.

One TableSpec per table key; one aligner per TableFamily.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from app.pipeline.amount_parser import format_amount, is_numeric_like, parse_number
from app.schemas.contracts import HeaderCell, StructuredTableView, TableMeta


class TableFamily(str, Enum):
    CODE = "CODE"
    BUDGET_SUMMARY = "BUDGET_SUMMARY"
    FISCAL_GRANT = "FISCAL_GRANT"
    THREE_PUBLIC = "THREE_PUBLIC"


@dataclass(frozen=True)
class TableSpec:
    key: str
    family: TableFamily
    col_count: int
    numeric_columns: tuple[int, ...]
    code_cols: int = 0
    section_label: str = ""
    code_label: str = ""
    name_label: str = ""
    code_leaf_labels: tuple[str, ...] = field(default_factory=tuple)
    numeric_labels: tuple[str, ...] = field(default_factory=tuple)

    @property
    def numeric_cols(self) -> int:
        return len(self.numeric_columns)


def _code_spec(key, col_count, code_cols, section, code_label, name_label, leaves, labels) -> TableSpec:
    numeric_cols = len(labels)
    return TableSpec(
        key=key,
        family=TableFamily.CODE,
        col_count=col_count,
        numeric_columns=tuple(range(col_count - numeric_cols, col_count)),
        code_cols=code_cols,
        section_label=section,
        code_label=code_label,
        name_label=name_label,
        code_leaf_labels=leaves,
        numeric_labels=labels,
    )


_FUNCTION_CODE = "功能分类科目编码"
_FUNCTION_NAME = "功能分类科目名称"
_EXPENSE_LABELS = ("合计", "基本支出", "项目支出")

TABLE_SPECS: dict[str, TableSpec] = {
    spec.key: spec
    for spec in (
        TableSpec(
            key="budget_summary",
            family=TableFamily.BUDGET_SUMMARY,
            col_count=4,
            numeric_columns=(1, 3),
        ),
        TableSpec(
            key="fiscal_grant_summary",
            family=TableFamily.FISCAL_GRANT,
            col_count=7,
            numeric_columns=(1, 3, 4, 5, 6),
        ),
        TableSpec(
            key="three_public",
            family=TableFamily.THREE_PUBLIC,
            col_count=7,
            numeric_columns=(0, 1, 2, 3, 4, 5, 6),
        ),
        _code_spec(
            "income_summary", 9, 3, "收入预算", _FUNCTION_CODE, _FUNCTION_NAME, ("类", "款", "项"),
            ("合计", "财政拨款收入", "事业收入", "事业单位经营收入", "其他收入"),
        ),
        _code_spec(
            "expenditure_summary", 7, 3, "支出预算", _FUNCTION_CODE, _FUNCTION_NAME,
            ("类", "款", "项"), _EXPENSE_LABELS,
        ),
        _code_spec(
            "general_budget", 7, 3, "一般公共预算支出", _FUNCTION_CODE, _FUNCTION_NAME,
            ("类", "款", "项"), _EXPENSE_LABELS,
        ),
        _code_spec(
            "gov_fund_budget", 7, 3, "政府性基金预算支出", _FUNCTION_CODE, _FUNCTION_NAME,
            ("类", "款", "项"), _EXPENSE_LABELS,
        ),
        _code_spec(
            "capital_budget", 7, 3, "国有资本经营预算支出", _FUNCTION_CODE, _FUNCTION_NAME,
            ("类", "款", "项"), _EXPENSE_LABELS,
        ),
        _code_spec(
            "basic_expenditure", 6, 2, "一般公共预算基本支出", "部门预算经济分类科目编码",
            "经济分类科目名称", ("类", "款"), ("合计", "人员经费", "公用经费"),
        ),
    )
}


# ── Cell helpers ─────────────────────────────────────────────

_SUMMARY_LABEL = re.compile(r'^(合计|总计|小计)$')
_CODE_TOKEN = re.compile(r'^\d{1,4}$')
_BANNER = re.compile(r'^(编制部门|编制单位|单位[:：])')
_COLUMN_CAPTION = re.compile(
    r'^(项目|功能分类科目编码|部门预算经济分类科目编码|经济分类科目编码|功能分类科目名称|经济分类科目名称)$'
)
_CODE_LEAF = re.compile(r'^(类|款|项)$')
_INCOME_SIDE = re.compile(r'(收入总计|财政拨款收入|一般公共预算资金|政府性基金|国有资本经营预算)')
_EXPENDITURE_SIDE = re.compile(r'(支出总计|支出)')


def to_cell_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def pad_row(row: list, col_count: int) -> list[str]:
    source = row or []
    return [to_cell_text(source[i]) if i < len(source) else "" for i in range(col_count)]


def is_summary_label(value: str) -> bool:
    return bool(_SUMMARY_LABEL.match(to_cell_text(value)))


def is_code_token(value: str) -> bool:
    return bool(_CODE_TOKEN.match(to_cell_text(value)))


def count_numeric_cells(row: list[str]) -> int:
    return sum(1 for c in row if is_numeric_like(c))


def is_income_side_label(value: str) -> bool:
    text = to_cell_text(value)
    return bool(_INCOME_SIDE.search(text)) and "支出" not in text


def is_expenditure_side_label(value: str) -> bool:
    return bool(_EXPENDITURE_SIDE.search(to_cell_text(value)))


def is_code_table_header_noise(text: str) -> bool:
    merged = to_cell_text(text)
    if not merged:
        return True
    return bool(_BANNER.match(merged) or _COLUMN_CAPTION.match(merged) or _CODE_LEAF.match(merged))


def extract_table_meta(lines: list[str]) -> TableMeta:
    """Pull 编制部门/编制单位 and the declared 单位 out of flattened row text."""
    meta = TableMeta()
    for line in lines:
        text = to_cell_text(line)
        if not text:
            continue
        org = re.search(r'(编制(?:部门|单位))[:：]?\s*(.*)', text)
        if org:
            meta.org_label = org.group(1) or meta.org_label
            candidate = re.sub(r'单位[:：].*$', '', to_cell_text(org.group(2))).strip()
            if candidate and not re.match(r'^单位[:：]?', candidate):
                meta.org_value = candidate
        unit = re.search(r'单位[:：]?\s*(万?元)', text)
        if unit:
            meta.unit_value = unit.group(1)
    return meta


# ── Code tables ──────────────────────────────────────────────

def align_code_table_row(row: list[str], spec: TableSpec) -> list[str]:
    """
    Numbers are read positionally from the tail; the left side is consumed
    as up to `code_cols` classification codes followed by the item name.
    """
    out = [""] * spec.col_count

    numeric_start = spec.col_count - spec.numeric_cols
    for i in range(spec.numeric_cols):
        val = to_cell_text(row[numeric_start + i]) if numeric_start + i < len(row) else ""
        out[numeric_start + i] = val if is_numeric_like(val) else "0"

    left = [c for c in (to_cell_text(v) for v in row[:numeric_start]) if c]
    if not left:
        return out

    if is_summary_label(left[0]):
        out[0] = left[0]
        return out

    cursor = 0
    while cursor < len(left) and cursor < spec.code_cols and is_code_token(left[cursor]):
        out[cursor] = left[cursor]
        cursor += 1

    if cursor < len(left):
        out[spec.code_cols] = left[cursor]

    return out


def _keep_code_row(row: list[str]) -> bool:
    first = next((c for c in row if c), "")
    if count_numeric_cells(row) == 0:
        return False
    if is_code_table_header_noise(first):
        return False
    if _BANNER.match("".join(row)):
        return False
    return True


def build_code_table(spec: TableSpec, rows: list[list[str]]) -> tuple[list[list[HeaderCell]], list[list[str]]]:
    padded = [pad_row(r, spec.col_count) for r in rows]
    body = [align_code_table_row(r, spec) for r in padded if _keep_code_row(r)]

    if not body:
        zero = [""] * spec.col_count
        zero[0] = "合计"
        for idx in spec.numeric_columns:
            zero[idx] = "0"
        body.append(zero)

    header = [
        [
            HeaderCell(text="项目", col_span=spec.code_cols + 1),
            HeaderCell(text=spec.section_label, col_span=spec.numeric_cols),
        ],
        [
            HeaderCell(text=spec.code_label, col_span=spec.code_cols),
            HeaderCell(text=spec.name_label, row_span=2),
            *[HeaderCell(text=label, row_span=2) for label in spec.numeric_labels],
        ],
        [HeaderCell(text=label) for label in spec.code_leaf_labels],
    ]
    return header, body


# ── Budget summary (two-sided revenue / expenditure) ─────────

_BUDGET_SUMMARY_PLACEHOLDER = ["收入总计", "0", "支出总计", "0"]


def align_budget_summary_row(raw: list[str]) -> Optional[list[str]]:
    merged = "".join(raw)
    if not merged:
        return None
    if _BANNER.match(merged):
        return None
    if "本年收入" in merged or "本年支出" in merged:
        return None
    if merged == "项目预算数项目预算数":
        return None

    values = [c for c in raw if c]
    labels = [c for c in values if not is_numeric_like(c)]
    nums = [c for c in values if is_numeric_like(c)]
    out = ["", "", "", ""]

    def expenditure_only(label: str) -> bool:
        return is_expenditure_side_label(label) and "收入" not in label

    if len(labels) >= 2 and len(nums) >= 2:
        out[0], out[1], out[2], out[3] = labels[0], nums[0], labels[1], nums[1]
        return out
    if len(labels) >= 2 and len(nums) == 1:
        out[0], out[2], out[3] = labels[0], labels[1], nums[0]
        return out
    if len(labels) == 1 and len(nums) == 1:
        if expenditure_only(labels[0]):
            out[2], out[3] = labels[0], nums[0]
        else:
            out[0], out[1] = labels[0], nums[0]
        return out
    if len(labels) == 1 and not nums:
        if expenditure_only(labels[0]):
            out[2] = labels[0]
        else:
            out[0] = labels[0]
        return out
    return None


def build_budget_summary(spec: TableSpec, rows: list[list[str]]) -> tuple[list[list[HeaderCell]], list[list[str]]]:
    # Source sheets are often wider than 4 columns (e.g. a 7-column print
    # layout); labels and numbers are paired by order, so read every cell.
    width = max(spec.col_count, max((len(r) for r in rows), default=0))
    aligned = (align_budget_summary_row(pad_row(r, width)) for r in rows)
    body = [r for r in aligned if r and any(r)]
    if not body:
        body = [list(_BUDGET_SUMMARY_PLACEHOLDER)]

    header = [
        [HeaderCell(text="本年收入", col_span=2), HeaderCell(text="本年支出", col_span=2)],
        [HeaderCell(text="项目"), HeaderCell(text="预算数"), HeaderCell(text="项目"), HeaderCell(text="预算数")],
    ]
    return header, body


# ── Fiscal-grant summary ─────────────────────────────────────

_FISCAL_GRANT_PLACEHOLDER = ["财政拨款收入合计", "", "财政拨款支出合计", "0", "0", "", ""]


def _num_or_blank(value: str) -> str:
    return value if is_numeric_like(value) else ""


def align_fiscal_grant_row(raw: list[str]) -> Optional[list[str]]:
    merged = "".join(raw)
    if not merged:
        return None
    if _BANNER.match(merged):
        return None
    if "财政拨款收入" in merged and "财政拨款支出" in merged and count_numeric_cells(raw) == 0:
        return None
    if "一般公共预算" in merged and "政府性基金预算" in merged and "国有资本经营预算" in merged:
        return None

    out = [""] * 7
    has_income = any(is_income_side_label(c) for c in raw)
    has_expenditure = any(is_expenditure_side_label(c) for c in raw)

    # Full row: income item/value then expenditure item and its four amounts
    if is_expenditure_side_label(raw[2]) or (
        raw[2] and not is_numeric_like(raw[2]) and (has_income or is_numeric_like(raw[1]))
    ):
        out[0] = raw[0]
        out[1] = _num_or_blank(raw[1])
        out[2] = raw[2]
        for i in range(3, 7):
            out[i] = _num_or_blank(raw[i])
        return out

    # Income side only
    if has_income and not has_expenditure and not raw[2]:
        out[0] = raw[0]
        out[1] = _num_or_blank(raw[1])
        return out

    # Expenditure side only
    if has_expenditure and not has_income and is_expenditure_side_label(raw[2]):
        out[2] = raw[2]
        for i in range(3, 7):
            out[i] = _num_or_blank(raw[i])
        return out

    # Already-clean row
    if is_numeric_like(raw[1]) or is_numeric_like(raw[3]):
        return list(raw[:7])

    return None


def build_fiscal_grant_summary(spec: TableSpec, rows: list[list[str]]) -> tuple[list[list[HeaderCell]], list[list[str]]]:
    aligned = (align_fiscal_grant_row(pad_row(r, spec.col_count)) for r in rows)
    body = [r for r in aligned if r and any(r)]
    if not body:
        body = [list(_FISCAL_GRANT_PLACEHOLDER)]

    header = [
        [HeaderCell(text="财政拨款收入", col_span=2), HeaderCell(text="财政拨款支出", col_span=5)],
        [
            HeaderCell(text="项目"),
            HeaderCell(text="预算数"),
            HeaderCell(text="项目"),
            HeaderCell(text="合计"),
            HeaderCell(text="一般公共预算"),
            HeaderCell(text="政府性基金预算"),
            HeaderCell(text="国有资本经营预算"),
        ],
    ]
    return header, body


# ── Three-public expenses ────────────────────────────────────
# Columns: 0 total, 1 outbound, 2 reception, 3 vehicle subtotal,
#          4 vehicle purchase, 5 vehicle operation, 6 operation fund

_THREE_PUBLIC_CAPTIONS = ("三公", "机关运行", "购置费", "运行费")


def align_three_public_row(source: list[str]) -> Optional[list[str]]:
    row = [to_cell_text(c) for c in source]
    if not any(row):
        return None
    if any(caption in c for c in row for caption in _THREE_PUBLIC_CAPTIONS):
        return None
    if not any(is_numeric_like(c) for c in row):
        return None

    out = ["0"] * 7
    for i in range(min(7, len(row))):
        out[i] = row[i] if is_numeric_like(row[i]) else "0"

    def num(i: int):
        return parse_number(out[i]) or 0

    # Formula cells (小计 / 合计) serialize as blank in many workbooks
    purchase, operation, subtotal = num(4), num(5), num(3)
    if subtotal == 0 and (purchase > 0 or operation > 0):
        out[3] = format_amount(purchase + operation)

    outbound, reception, vehicle, total = num(1), num(2), num(3), num(0)
    if total == 0 and (outbound > 0 or reception > 0 or vehicle > 0):
        out[0] = format_amount(outbound + reception + vehicle)

    return out


def build_three_public(spec: TableSpec, rows: list[list[str]]) -> tuple[list[list[HeaderCell]], list[list[str]]]:
    body = [r for r in (align_three_public_row(row) for row in rows) if r is not None]
    if not body:
        body = [["0"] * spec.col_count]

    header = [
        [HeaderCell(text="“三公”经费预算数", col_span=6), HeaderCell(text="机关运行经费预算数", row_span=3)],
        [
            HeaderCell(text="合计", row_span=2),
            HeaderCell(text="因公出国(境)费", row_span=2),
            HeaderCell(text="公务接待费", row_span=2),
            HeaderCell(text="公务用车购置及运行费", col_span=3),
        ],
        [HeaderCell(text="小计"), HeaderCell(text="购置费"), HeaderCell(text="运行费")],
    ]
    return header, body


# ── Dispatch ─────────────────────────────────────────────────

_FAMILY_BUILDERS: dict[TableFamily, Callable] = {
    TableFamily.CODE: build_code_table,
    TableFamily.BUDGET_SUMMARY: build_budget_summary,
    TableFamily.FISCAL_GRANT: build_fiscal_grant_summary,
    TableFamily.THREE_PUBLIC: build_three_public,
}


def build_structured_view(table_key: str, rows: list[list[str]]) -> Optional[StructuredTableView]:
    """
    Project a raw grid into its canonical StructuredTableView.
    Returns None for unknown table keys or an empty grid.
    """
    spec = TABLE_SPECS.get(table_key)
    if spec is None or not rows:
        return None

    header, body = _FAMILY_BUILDERS[spec.family](spec, rows)
    meta = extract_table_meta([" ".join(to_cell_text(c) for c in r) for r in rows])

    return StructuredTableView(
        table_key=table_key,
        col_count=spec.col_count,
        numeric_columns=list(spec.numeric_columns),
        meta=meta,
        header_rows=header,
        body_rows=[pad_row(r, spec.col_count) for r in body],
    )


def infer_table_key(title: str) -> str:
    """Map a Chinese table title to its table key ('' when unknown)."""
    t = title or ""
    if "收入预算总表" in t and "财政拨款" not in t and "收支" not in t:
        return "income_summary"
    if "支出预算总表" in t and "财政拨款" not in t and "收支" not in t:
        return "expenditure_summary"
    if "财政拨款收支预算总表" in t:
        return "fiscal_grant_summary"
    if "一般公共预算支出功能分类预算表" in t:
        return "general_budget"
    if "政府性基金预算支出功能分类预算表" in t:
        return "gov_fund_budget"
    if "国有资本经营预算支出功能分类预算表" in t:
        return "capital_budget"
    if "经济分类预算表" in t:
        return "basic_expenditure"
    if "“三公”经费" in t or "三公经费" in t:
        return "three_public"
    if "财务收支预算总表" in t:
        return "budget_summary"
    return ""
