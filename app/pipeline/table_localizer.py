"""
Table localizer.

Matches a document's sheets/pages against the fixed catalog of budget tables
by keyword overlap with the expected titles. The best sheet at or above the
score threshold becomes the READY candidate; otherwise the table is MISSING
and the closest sheets are kept as near-misses for diagnosis.

Score for one (table, sheet) pair:
- 0.0 if the sheet name/title contains an exclusion word
- 1.0 if the sheet name/title contains one of the full title aliases
- else matched_keywords / len(keywords)
"""

import re
from dataclasses import dataclass, field
from typing import Optional

import structlog

from app.config import settings
from app.models.enums import TableStatus
from app.observability.metrics import tables_localized_total
from app.schemas.contracts import BudgetTableCandidate, NearMiss, ParsedDocument, SourceSheet

logger = structlog.get_logger(__name__)

# Rows sampled beyond the title when a sheet has a generic name
_HEADER_SAMPLE_ROWS = 3


@dataclass(frozen=True)
class CatalogEntry:
    key: str
    title: str
    aliases: tuple[str, ...]
    keywords: tuple[str, ...]
    exclude: tuple[str, ...] = field(default_factory=tuple)


TABLE_CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry(
        key="budget_summary",
        title="财务收支预算总表",
        aliases=("财务收支预算总表", "收支预算总表", "收支总表"),
        keywords=("收支", "预算", "总表", "收入总计", "支出总计"),
        exclude=("财政拨款",),
    ),
    CatalogEntry(
        key="income_summary",
        title="收入预算总表",
        aliases=("收入预算总表",),
        keywords=("收入", "预算", "总表", "事业收入", "其他收入"),
        exclude=("财政拨款收支", "收支"),
    ),
    CatalogEntry(
        key="expenditure_summary",
        title="支出预算总表",
        aliases=("支出预算总表",),
        keywords=("支出", "预算", "总表", "基本支出", "项目支出"),
        exclude=("财政拨款收支", "收支", "功能分类", "经济分类"),
    ),
    CatalogEntry(
        key="fiscal_grant_summary",
        title="财政拨款收支预算总表",
        aliases=("财政拨款收支预算总表", "财政拨款收支总表"),
        keywords=("财政拨款", "收支", "预算", "总表"),
    ),
    CatalogEntry(
        key="general_budget",
        title="一般公共预算支出功能分类预算表",
        aliases=("一般公共预算支出功能分类预算表", "一般公共预算支出预算表"),
        keywords=("一般公共预算", "支出", "功能分类", "预算表"),
        exclude=("经济分类", "基本支出预算表"),
    ),
    CatalogEntry(
        key="gov_fund_budget",
        title="政府性基金预算支出功能分类预算表",
        aliases=("政府性基金预算支出功能分类预算表", "政府性基金预算支出预算表"),
        keywords=("政府性基金", "支出", "功能分类", "预算表"),
    ),
    CatalogEntry(
        key="capital_budget",
        title="国有资本经营预算支出功能分类预算表",
        aliases=("国有资本经营预算支出功能分类预算表", "国有资本经营预算支出预算表"),
        keywords=("国有资本经营", "支出", "功能分类", "预算表"),
    ),
    CatalogEntry(
        key="basic_expenditure",
        title="一般公共预算基本支出经济分类预算表",
        aliases=("基本支出经济分类预算表", "经济分类预算表", "基本支出预算表"),
        keywords=("基本支出", "经济分类", "人员经费", "公用经费"),
    ),
    CatalogEntry(
        key="three_public",
        title="“三公”经费和机关运行经费预算表",
        aliases=("三公经费和机关运行经费预算表", "三公经费预算表", "三公经费"),
        keywords=("三公", "经费", "机关运行", "公务接待", "公务用车"),
    ),
)

CATALOG_BY_KEY = {entry.key: entry for entry in TABLE_CATALOG}


def _compact(text: str) -> str:
    return re.sub(r"[\s　“”\"'（）()]+", "", text or "")


def sheet_search_text(sheet: SourceSheet) -> tuple[str, str]:
    """(title text, title + leading rows text), both compacted."""
    title = _compact(sheet.name + sheet.title)
    header = "".join("".join(row) for row in sheet.rows[:_HEADER_SAMPLE_ROWS])
    return title, title + _compact(header)


def score_sheet(entry: CatalogEntry, title: str, body: str = "") -> tuple[float, list[str]]:
    """
    Score one sheet against a catalog entry.
    Aliases and exclusions look at the title only; keywords may also hit the
    leading rows, where column captions such as 收入总计 live.
    """
    if any(_compact(word) in title for word in entry.exclude):
        return 0.0, []

    for alias in entry.aliases:
        if _compact(alias) in title:
            return 1.0, [alias]

    haystack = body or title
    matched = [kw for kw in entry.keywords if _compact(kw) in haystack]
    if not entry.keywords:
        return 0.0, matched
    return round(len(matched) / len(entry.keywords), 4), matched


def localize_tables(
    document: ParsedDocument,
    min_score: Optional[float] = None,
    top_n: Optional[int] = None,
) -> list[BudgetTableCandidate]:
    """
    Build one candidate per catalog key.
    A sheet is claimed by at most one table: pairs are assigned greedily from
    the highest score down, ties broken by catalog order then sheet order.
    """
    min_score = settings.LOCALIZER_MIN_SCORE if min_score is None else min_score
    top_n = settings.LOCALIZER_TOP_N if top_n is None else top_n

    texts = [sheet_search_text(s) for s in document.sheets]
    scores: dict[str, list[tuple[float, list[str], int]]] = {}
    pairs = []
    for entry_index, entry in enumerate(TABLE_CATALOG):
        per_sheet = []
        for sheet_index, (title, body) in enumerate(texts):
            score, matched = score_sheet(entry, title, body)
            per_sheet.append((score, matched, sheet_index))
            if score >= min_score:
                pairs.append((-score, entry_index, sheet_index))
        per_sheet.sort(key=lambda t: (-t[0], t[2]))
        scores[entry.key] = per_sheet

    assigned: dict[str, int] = {}
    claimed: set[int] = set()
    for _neg_score, entry_index, sheet_index in sorted(pairs):
        key = TABLE_CATALOG[entry_index].key
        if key in assigned or sheet_index in claimed:
            continue
        assigned[key] = sheet_index
        claimed.add(sheet_index)

    candidates = []
    for entry in TABLE_CATALOG:
        ranked = scores[entry.key]
        if entry.key in assigned:
            sheet = document.sheets[assigned[entry.key]]
            score, matched = next((s, m) for s, m, i in ranked if i == assigned[entry.key])
            candidate = BudgetTableCandidate(
                key=entry.key,
                title=entry.title,
                matched_sheet_or_page=sheet.name,
                status=TableStatus.READY,
                row_count=len(sheet.rows),
                col_count=max((len(r) for r in sheet.rows), default=0),
                rows=sheet.rows,
                page_numbers=sheet.page_numbers,
                score=score,
                matched_keywords=matched,
            )
        else:
            near = [
                NearMiss(sheet_name=document.sheets[i].name, score=s, matched_keywords=m)
                for s, m, i in ranked
                if s > 0
            ][:top_n]
            candidate = BudgetTableCandidate(
                key=entry.key,
                title=entry.title,
                status=TableStatus.MISSING,
                near_misses=near,
            )
        tables_localized_total.labels(table_key=entry.key, status=candidate.status.value).inc()
        candidates.append(candidate)

    logger.info(
        "tables_localized",
        path=document.path,
        ready=[c.key for c in candidates if c.is_ready],
        missing=[c.key for c in candidates if not c.is_ready],
    )
    return candidates


def diagnose(candidates: list[BudgetTableCandidate]) -> list[dict]:
    """Missing tables with suggested sheet names, for operators to rename/re-upload."""
    report = []
    for c in candidates:
        if c.is_ready:
            continue
        report.append({
            "table_key": c.key,
            "expected_title": c.title,
            "candidates": [
                {
                    "sheet_name": nm.sheet_name,
                    "score": nm.score,
                    "matched_keywords": nm.matched_keywords,
                }
                for nm in c.near_misses
            ],
        })
    return report


def candidates_by_key(candidates: list[BudgetTableCandidate]) -> dict[str, BudgetTableCandidate]:
    return {c.key: c for c in candidates}
