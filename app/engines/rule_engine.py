"""
Rule-based field extractor.

Two channels, both deterministic:
- table facts: per-table readers over localized budget tables, converted to
  万元 using the declared unit, the table's default unit, or magnitude
- text facts: "label amount" segments over raw document (or OCR) text,
  resolved through the alias vocabulary
"""

import re
from decimal import Decimal
from typing import Callable, Optional

import structlog

from app.engines.base import FieldExtractor, merge_items
from app.models.enums import Confidence
from app.observability.metrics import fields_extracted_total
from app.pipeline.alias_resolver import AliasResolver
from app.pipeline.amount_parser import (
    UNIT_TO_SCALE_WANYUAN,
    parse_amount_cn,
    parse_number,
    round_amount,
)
from app.pipeline.table_builder import TABLE_SPECS, align_three_public_row, build_structured_view
from app.schemas.contracts import (
    BudgetTableCandidate,
    ExtractedItem,
    ExtractionOutcome,
    ParsedDocument,
)

logger = structlog.get_logger(__name__)

SOURCE_RAW_TEXT = "RAW_TEXT"
SOURCE_DERIVED = "DERIVED"

TABLE_DEFAULT_UNIT = {
    "budget_summary": "yuan",
    "income_summary": "yuan",
    "expenditure_summary": "yuan",
    "fiscal_grant_summary": "yuan",
    "general_budget": "yuan",
    "gov_fund_budget": "yuan",
    "capital_budget": "yuan",
    "basic_expenditure": "yuan",
    "three_public": "wanyuan",
}

# Markers used to find a table among unassigned sheets when the localizer missed it
_FALLBACK_MARKERS = {
    "budget_summary": (("本年收入", "本年支出", "收入总计", "支出总计"), (), 2),
    "income_summary": (("本年收入", "财政拨款收入", "其他收入"), (), 2),
    "expenditure_summary": (("本年支出", "支出总计"), (), 2),
    "fiscal_grant_summary": (("财政拨款收入", "财政拨款支出", "支出总计"), (), 2),
    "three_public": (("三公", "因公出国", "公务接待费", "公务用车"), ("因公出国", "公务接待费"), 2),
}

_ORDINAL_PREFIX = re.compile(
    r'^(?:[一二三四五六七八九十]+[、.．]|[（(][一二三四五六七八九十\d]+[)）]|\d+[、.．](?!\d))\s*'
)
_AMOUNT_TOKEN = re.compile(r'^[(（]?[-−+]?\d[\d,，.]*[)）]?(?:万元|千元|元)?$')
_CJK_BEFORE_DIGIT = re.compile(r'(?<=[一-鿿])(?=[(（]?[-−]?\d)')
_SEPARATORS = re.compile(r'[\s:：]+')


def compact_text(value) -> str:
    return re.sub(r'[\s　]+', '', str(value or ''))


def row_text(row: list[str]) -> str:
    return "".join(compact_text(c) for c in row)


def strip_ordinal(label: str) -> str:
    """'一、财政拨款收入' -> '财政拨款收入'"""
    return _ORDINAL_PREFIX.sub('', (label or '').strip())


# ────────────────────────────────────────────────────────────
# Unit scale
# ────────────────────────────────────────────────────────────

def detect_declared_unit(rows: list[list[str]], max_rows: int = 20) -> Optional[str]:
    cells = [
        re.sub(r'\s+', '', str(c or ''))
        for row in rows[:max_rows]
        for c in row
        if '单位' in str(c or '')
    ]
    if not cells:
        return None
    merged = "|".join(cells)
    if "万元" in merged:
        return "wanyuan"
    if "千元" in merged:
        return "qianyuan"
    if "元" in merged:
        return "yuan"
    return None


def detect_scale(rows: list[list[str]], table_key: str) -> Decimal:
    """Declared 单位 first, then the table's default unit, then magnitude."""
    declared = detect_declared_unit(rows)
    if declared:
        return UNIT_TO_SCALE_WANYUAN[declared]

    default_unit = TABLE_DEFAULT_UNIT.get(table_key)
    if default_unit:
        return UNIT_TO_SCALE_WANYUAN[default_unit]

    values = [abs(v) for row in rows[:80] for v in (parse_number(c) for c in row) if v is not None]
    if values and max(values) >= 100000:
        return UNIT_TO_SCALE_WANYUAN["yuan"]
    return Decimal("1")


# ────────────────────────────────────────────────────────────
# Per-table readers
# ────────────────────────────────────────────────────────────

class _TableReader:
    """Collects facts for one table."""

    def __init__(self, table_key: str, scale: Decimal):
        self.table_key = table_key
        self.scale = scale
        self.items: list[ExtractedItem] = []

    def add(
        self,
        key: str,
        value: Optional[Decimal],
        confidence: Confidence,
        row: Optional[list[str]] = None,
        label: str = "",
        snippet: Optional[str] = None,
    ):
        if value is None:
            return
        if snippet is None and row:
            snippet = " ".join(c for c in row if c)
        self.items.append(ExtractedItem(
            key=key,
            label=label or key,
            value=round_amount(value),
            raw_value=str(value),
            confidence=confidence,
            snippet=snippet,
            source=f"TABLE:{self.table_key}",
        ))

    def read(self, row: Optional[list[str]], index: int) -> Optional[Decimal]:
        if row is None or index >= len(row):
            return None
        parsed = parse_number(row[index])
        return None if parsed is None else parsed * self.scale


def find_row(rows: list[list[str]], include, exclude=()) -> Optional[list[str]]:
    include = (include,) if isinstance(include, str) else include
    exclude = (exclude,) if isinstance(exclude, str) else exclude
    for row in rows:
        text = row_text(row)
        if text and all(t in text for t in include) and not any(t in text for t in exclude):
            return row
    return None


def _read_budget_summary(rows: list[list[str]], reader: _TableReader) -> None:
    view = build_structured_view("budget_summary", rows)
    body = view.body_rows if view else []

    def direct_or_zero(key, row, index, label):
        # A printed row with a blank amount reads as zero; a missing row reads as nothing
        if row is None:
            return
        value = reader.read(row, index)
        if value is None:
            reader.add(key, Decimal("0"), Confidence.MEDIUM, row, label)
        else:
            reader.add(key, value, Confidence.HIGH, row, label)

    revenue_total = find_row(body, "收入总计")
    expenditure_total = find_row(body, "支出总计")
    reader.add("budget_revenue_total", reader.read(revenue_total, 1), Confidence.HIGH, revenue_total, "收入总计")
    direct_or_zero("budget_revenue_fiscal", find_row(body, "财政拨款收入"), 1, "财政拨款收入")
    direct_or_zero("budget_revenue_business", find_row(body, "事业收入", "事业单位经营收入"), 1, "事业收入")
    direct_or_zero("budget_revenue_operation", find_row(body, "事业单位经营收入"), 1, "事业单位经营收入")
    direct_or_zero("budget_revenue_other", find_row(body, "其他收入"), 1, "其他收入")
    reader.add(
        "budget_expenditure_total", reader.read(expenditure_total, 3), Confidence.HIGH,
        expenditure_total, "支出总计",
    )


def _top_level_rows(table_key: str, rows: list[list[str]]):
    """Aligned rows whose class code is 3 digits with no sub-codes (e.g. 201 一般公共服务支出)."""
    view = build_structured_view(table_key, rows)
    if view is None:
        return None, []
    name_col = view.numeric_columns[0] - 1
    top = [
        r for r in view.body_rows
        if re.match(r'^\d{3}$', r[0]) and not r[1] and r[name_col] and not re.match(r'^\d+$', r[name_col])
    ]
    return view, top


def _sum_column(rows: list[list[str]], index: int, scale: Decimal) -> Decimal:
    total = Decimal("0")
    for row in rows:
        parsed = parse_number(row[index])
        if parsed is not None:
            total += parsed * scale
    return total


def _read_code_summary(table_key: str, keys: tuple[str, ...], rows, reader: _TableReader) -> None:
    view, top = _top_level_rows(table_key, rows)
    if not top:
        return
    captions = TABLE_SPECS[table_key].numeric_labels
    for key, col, caption in zip(keys, view.numeric_columns, captions):
        reader.add(
            key, _sum_column(top, col, reader.scale), Confidence.MEDIUM,
            snippet=f"{table_key} {caption}: sum of {len(top)} top-level rows",
        )


def _read_income_summary(rows, reader: _TableReader) -> None:
    _read_code_summary(
        "income_summary",
        ("budget_revenue_total", "budget_revenue_fiscal", "budget_revenue_business",
         "budget_revenue_operation", "budget_revenue_other"),
        rows, reader,
    )


def _read_expenditure_summary(rows, reader: _TableReader) -> None:
    _read_code_summary(
        "expenditure_summary",
        ("budget_expenditure_total", "budget_expenditure_basic", "budget_expenditure_project"),
        rows, reader,
    )


def _read_fiscal_grant_summary(rows, reader: _TableReader) -> None:
    view = build_structured_view("fiscal_grant_summary", rows)
    body = view.body_rows if view else []
    total = find_row(body, "支出总计") or find_row(body, "收入总计")
    if total is None:
        return
    reader.add("fiscal_grant_revenue_total", reader.read(total, 1), Confidence.HIGH, total)
    reader.add("fiscal_grant_expenditure_total", reader.read(total, 3), Confidence.HIGH, total)
    for key, col in (
        ("fiscal_grant_expenditure_general", 4),
        ("fiscal_grant_expenditure_gov_fund", 5),
        ("fiscal_grant_expenditure_capital", 6),
    ):
        value = reader.read(total, col)
        if value is None:
            reader.add(key, Decimal("0"), Confidence.MEDIUM, total)
        else:
            reader.add(key, value, Confidence.HIGH, total)


_THREE_PUBLIC_STANDARD = (
    "three_public_total",
    "three_public_outbound",
    "three_public_reception",
    "three_public_vehicle_total",
    "three_public_vehicle_purchase",
    "three_public_vehicle_operation",
    "operation_fund",
)


def _strip_row_label(row: list[str]) -> list[str]:
    """Drop leading caption cells ('合计', '“三公”经费') so amounts sit at their printed positions."""
    start = 0
    while start < len(row) and row[start] and parse_number(row[start]) is None:
        start += 1
    return list(row[start:])


def _read_three_public(rows, reader: _TableReader) -> None:
    """
    The data row is the last row with at least two numbers. Six or more cells
    is the printed layout, read through the builder's row alignment so blank
    小计/合计 formula cells come back recomputed (graded MEDIUM). OCR'd pages
    often keep only 2-3 numbers, which are placed using the captions present
    in the table.
    """
    text = "".join(row_text(r) for r in rows[:20])
    has_operation_fund = "机关运行经费" in text
    has_outbound = "因公出国" in text
    has_reception = "公务接待费" in text
    has_vehicle_headers = "小计" in text or "购置费" in text or "运行费" in text

    data_row = next(
        (r for r in reversed(rows) if sum(1 for c in r if parse_number(c) is not None) >= 2),
        None,
    )
    if data_row is None:
        return

    cells = _strip_row_label(data_row)
    if len(cells) >= 6:
        aligned = align_three_public_row(cells) or cells
        for index, key in enumerate(_THREE_PUBLIC_STANDARD):
            if index >= len(aligned):
                break
            value = parse_number(aligned[index])
            if value is None:
                continue
            printed = parse_number(cells[index]) if index < len(cells) else None
            confidence = Confidence.HIGH if printed == value else Confidence.MEDIUM
            reader.add(key, value * reader.scale, confidence, data_row)
        return

    nums = [v * reader.scale for v in (parse_number(c) for c in data_row) if v is not None]

    reader.add("three_public_total", nums[0], Confidence.MEDIUM, data_row)
    if len(nums) == 3:
        if has_outbound and has_reception:
            reader.add("three_public_reception", nums[1], Confidence.MEDIUM, data_row)
            reader.add("three_public_outbound", Decimal("0"), Confidence.MEDIUM, data_row)
        elif has_reception:
            reader.add("three_public_reception", nums[1], Confidence.MEDIUM, data_row)
        elif has_outbound:
            reader.add("three_public_outbound", nums[1], Confidence.MEDIUM, data_row)
        by_magnitude = abs(nums[2]) > max(abs(nums[0]), abs(nums[1])) * 5
        if has_operation_fund or (has_vehicle_headers and by_magnitude):
            reader.add("operation_fund", nums[2], Confidence.MEDIUM, data_row)
    elif len(nums) == 2:
        if has_operation_fund:
            reader.add("operation_fund", nums[1], Confidence.MEDIUM, data_row)
        elif has_reception:
            reader.add("three_public_reception", nums[1], Confidence.MEDIUM, data_row)
        elif has_outbound:
            reader.add("three_public_outbound", nums[1], Confidence.MEDIUM, data_row)


TABLE_READERS: dict[str, Callable[[list[list[str]], _TableReader], None]] = {
    "budget_summary": _read_budget_summary,
    "income_summary": _read_income_summary,
    "expenditure_summary": _read_expenditure_summary,
    "fiscal_grant_summary": _read_fiscal_grant_summary,
    "three_public": _read_three_public,
}


def _fallback_rows(table_key: str, document: Optional[ParsedDocument], claimed: set[str]) -> list[list[str]]:
    """Best unclaimed sheet by marker count, when the localizer found nothing."""
    if document is None or table_key not in _FALLBACK_MARKERS:
        return []
    markers, required, min_score = _FALLBACK_MARKERS[table_key]
    best_rows, best_score = [], 0
    for sheet in document.sheets:
        if sheet.name in claimed or not sheet.rows:
            continue
        text = "".join(row_text(r) for r in sheet.rows[:28])
        if not all(m in text for m in required):
            continue
        score = sum(1 for m in markers if m in text)
        if score > best_score:
            best_rows, best_score = sheet.rows, score
    return best_rows if best_score >= min_score else []


def extract_table_facts(
    tables: list[BudgetTableCandidate],
    document: Optional[ParsedDocument] = None,
) -> tuple[list[ExtractedItem], dict[str, int]]:
    """
    Read canonical facts from localized tables.
    Returns (items, facts-per-table). A key read from several tables keeps
    the most confident reading with every snippet; derived fallbacks only
    fill keys no table produced.
    """
    by_key = {t.key: t for t in tables if t.is_ready and t.rows}
    claimed = {t.matched_sheet_or_page for t in tables if t.is_ready}

    read_items: list[ExtractedItem] = []
    counts: dict[str, int] = {}
    for table_key, read in TABLE_READERS.items():
        rows = by_key[table_key].rows if table_key in by_key else _fallback_rows(table_key, document, claimed)
        if not rows:
            continue
        reader = _TableReader(table_key, detect_scale(rows, table_key))
        read(rows, reader)
        counts[table_key] = len(reader.items)
        read_items.extend(reader.items)

    collected = {item.key: item for item in merge_items(read_items)}
    _derive_missing(collected)
    return list(collected.values()), counts


def _derive_missing(collected: dict[str, ExtractedItem]) -> None:
    def value(key):
        item = collected.get(key)
        return item.value if item else None

    def derive(key, amount, basis):
        collected[key] = ExtractedItem(
            key=key,
            label=key,
            value=round_amount(amount),
            raw_value=str(amount),
            confidence=Confidence.MEDIUM,
            snippet=f"derived from {basis}",
            source=SOURCE_DERIVED,
        )

    if value("budget_revenue_total") is None:
        parts = [
            value(k) for k in (
                "budget_revenue_fiscal", "budget_revenue_business",
                "budget_revenue_operation", "budget_revenue_other",
            )
            if value(k) is not None
        ]
        if parts:
            derive("budget_revenue_total", sum(parts, Decimal("0")), "revenue parts")

    if value("fiscal_grant_revenue_total") is None and value("budget_revenue_fiscal") is not None:
        derive("fiscal_grant_revenue_total", value("budget_revenue_fiscal"), "budget_revenue_fiscal")

    if value("fiscal_grant_expenditure_total") is None and value("budget_expenditure_total") is not None:
        derive("fiscal_grant_expenditure_total", value("budget_expenditure_total"), "budget_expenditure_total")

    if value("fiscal_grant_expenditure_general") is None and value("fiscal_grant_expenditure_total") is not None:
        derive("fiscal_grant_expenditure_general", value("fiscal_grant_expenditure_total"), "fiscal_grant_expenditure_total")


# ────────────────────────────────────────────────────────────
# Text facts
# ────────────────────────────────────────────────────────────

def split_segments(line: str) -> list[tuple[str, list[str]]]:
    """
    Split a text line into (label, amount tokens) segments.
    '收入总计 100 支出总计 100' -> [('收入总计', ['100']), ('支出总计', ['100'])]
    """
    spaced = _CJK_BEFORE_DIGIT.sub(' ', line.strip())
    segments: list[tuple[str, list[str]]] = []
    label_parts: list[str] = []
    amounts: list[str] = []
    for token in _SEPARATORS.split(spaced):
        if not token:
            continue
        if _AMOUNT_TOKEN.match(token) and label_parts:
            amounts.append(token)
            continue
        if amounts:
            segments.append(("".join(label_parts), amounts))
            label_parts, amounts = [], []
        label_parts.append(token)
    if label_parts:
        segments.append(("".join(label_parts), amounts))
    return segments


def extract_text_facts(
    text: str,
    resolver: AliasResolver,
    source: str = SOURCE_RAW_TEXT,
) -> tuple[list[ExtractedItem], list[ExtractedItem]]:
    """
    Returns (resolved items, unmatched labels).
    Exact labels grade HIGH, fuzzy LOW; a label with more than one distinct
    amount, or an amount that does not parse, grades UNRECOGNIZED.
    """
    items: list[ExtractedItem] = []
    unmatched: list[ExtractedItem] = []

    for line in (text or "").splitlines():
        if not line.strip():
            continue
        for raw_label, tokens in split_segments(line):
            if not tokens:
                continue
            label = strip_ordinal(raw_label)
            parsed = [parse_amount_cn(t) for t in tokens]
            values = {
                round_amount(p.amount * UNIT_TO_SCALE_WANYUAN[p.unit] if p.unit else p.amount)
                for p in parsed if p.amount is not None
            }

            resolution = resolver.resolve(label)
            value = next(iter(values)) if len(values) == 1 and all(p.amount is not None for p in parsed) else None
            confidence = resolution.confidence if value is not None else Confidence.UNRECOGNIZED

            item = ExtractedItem(
                key=resolution.key,
                label=label,
                value=value,
                raw_value=" ".join(tokens),
                confidence=confidence,
                snippet=line.strip(),
                source=source,
            )
            if resolution.matched:
                items.append(item)
            else:
                unmatched.append(item)

    return merge_items(items), unmatched


class RuleBasedExtractor(FieldExtractor):
    """
    Table facts first; text facts only fill keys the tables did not produce.
    """

    engine_name = "rule"
    engine_version = "1.0.0"

    def __init__(self, resolver: Optional[AliasResolver] = None):
        self.resolver = resolver or AliasResolver()

    async def extract(
        self,
        document: ParsedDocument,
        tables: list[BudgetTableCandidate],
    ) -> ExtractionOutcome:
        table_items, counts = extract_table_facts(tables, document)
        text_items, unmatched = extract_text_facts(document.raw_text, self.resolver)

        seen = {i.key for i in table_items}
        items = table_items + [i for i in text_items if i.key not in seen and i.value is not None]

        for item in items:
            fields_extracted_total.labels(engine_name=self.engine_name, confidence=item.confidence.value).inc()

        logger.info(
            "rule_extraction_complete",
            path=document.path,
            table_facts=len(table_items),
            text_facts=len(items) - len(table_items),
            unmatched=len(unmatched),
        )
        return ExtractionOutcome(
            engine_name=self.engine_name,
            items=items,
            unmatched=unmatched,
            table_fact_counts=counts,
        )
