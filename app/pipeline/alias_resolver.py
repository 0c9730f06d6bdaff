"""
Alias resolver.

Maps free-text budget labels to canonical field keys. Resolution order:
1. APPROVED custom mapping from alias_mappings  -> HIGH
2. built-in exact alias map                     -> HIGH
3. ordered fuzzy containment rules              -> LOW
4. unmatched

Reviewers teach the resolver by approving CANDIDATE mappings; an approved
label resolves HIGH from then on. REJECTED mappings are never applied.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from rapidfuzz import fuzz
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import AliasStatus, Confidence
from app.models.tables import AliasMapping
from app.observability.metrics import alias_mappings

logger = structlog.get_logger(__name__)

# Match sources carried on ExtractedItem.source suffixes and field provenance
SOURCE_CUSTOM = "ALIAS_CUSTOM"
SOURCE_EXACT = "ALIAS_EXACT"
SOURCE_FUZZY = "ALIAS_FUZZY"


class AliasNotFoundError(Exception):
    def __init__(self, alias_id: str):
        self.alias_id = alias_id
        super().__init__(f"alias mapping not found: {alias_id}")


def normalize_text(label: Optional[str]) -> str:
    text = str(label or "").lower().strip()
    text = re.sub(r'[“”"\'`]', '', text)
    text = re.sub(r'[（(].*?[)）]', '', text)
    text = re.sub(r'[,:;，。；：、]', '', text)
    text = re.sub(r'\s+', '', text)
    return re.sub(r'万元|万|元', '', text)


EXACT_ALIAS_MAP: dict[str, str] = {
    "收入合计": "budget_revenue_total",
    "收入总计": "budget_revenue_total",
    "本年收入": "budget_revenue_total",
    "预算收入合计": "budget_revenue_total",
    "财政拨款收入": "budget_revenue_fiscal",
    "事业收入": "budget_revenue_business",
    "事业单位经营收入": "budget_revenue_operation",
    "经营收入": "budget_revenue_operation",
    "其他收入": "budget_revenue_other",

    "支出合计": "budget_expenditure_total",
    "支出总计": "budget_expenditure_total",
    "本年支出": "budget_expenditure_total",
    "预算支出合计": "budget_expenditure_total",
    "基本支出": "budget_expenditure_basic",
    "项目支出": "budget_expenditure_project",

    "财政拨款收入合计": "fiscal_grant_revenue_total",
    "财政拨款支出合计": "fiscal_grant_expenditure_total",
    "一般公共预算财政拨款支出": "fiscal_grant_expenditure_general",
    "政府性基金预算财政拨款支出": "fiscal_grant_expenditure_gov_fund",
    "国有资本经营预算财政拨款支出": "fiscal_grant_expenditure_capital",

    "三公经费合计": "three_public_total",
    "三公经费": "three_public_total",
    "因公出国费": "three_public_outbound",
    "因公出国境费": "three_public_outbound",
    "公务用车购置及运行费": "three_public_vehicle_total",
    "公务用车购置和运行费": "three_public_vehicle_total",
    "公务用车购置费": "three_public_vehicle_purchase",
    "公务用车运行费": "three_public_vehicle_operation",
    "公务接待费": "three_public_reception",
    "机关运行经费预算数": "operation_fund",
    "机关运行经费": "operation_fund",

    "totalincome": "budget_revenue_total",
    "fiscalappropriationincome": "budget_revenue_fiscal",
    "businessincome": "budget_revenue_business",
    "operationincome": "budget_revenue_operation",
    "otherincome": "budget_revenue_other",
    "totalexpenditure": "budget_expenditure_total",
    "basicexpenditure": "budget_expenditure_basic",
    "projectexpenditure": "budget_expenditure_project",
    "threepublictotal": "three_public_total",
    "outboundexpense": "three_public_outbound",
    "vehiclepurchaseoperation": "three_public_vehicle_total",
    "vehiclepurchase": "three_public_vehicle_purchase",
    "vehicleoperation": "three_public_vehicle_operation",
    "receptionexpense": "three_public_reception",
    "operationfund": "operation_fund",
}

CANONICAL_KEYS: frozenset[str] = frozenset(EXACT_ALIAS_MAP.values())


@dataclass(frozen=True)
class FuzzyRule:
    key: str
    test: Callable[[str], bool]


def _has(*words: str) -> Callable[[str], bool]:
    return lambda text: all(w in text for w in words)


# Order matters: the first matching rule wins
FUZZY_RULES: tuple[FuzzyRule, ...] = (
    FuzzyRule("three_public_total", _has("三公", "合计")),
    FuzzyRule("three_public_outbound", _has("因公出国")),
    FuzzyRule(
        "three_public_vehicle_total",
        lambda t: "公务用车" in t and ("购置及运行" in t or "购置和运行" in t),
    ),
    FuzzyRule(
        "three_public_vehicle_purchase",
        lambda t: "公务用车" in t and "购置费" in t and "运行" not in t,
    ),
    FuzzyRule("three_public_vehicle_operation", _has("公务用车", "运行费")),
    FuzzyRule("three_public_reception", _has("公务接待")),
    FuzzyRule("operation_fund", _has("机关运行经费")),

    FuzzyRule("fiscal_grant_expenditure_capital", _has("国有资本经营预算", "财政拨款", "支出")),
    FuzzyRule("fiscal_grant_expenditure_gov_fund", _has("政府性基金预算", "财政拨款", "支出")),
    FuzzyRule("fiscal_grant_expenditure_general", _has("一般公共预算", "财政拨款", "支出")),
    FuzzyRule("fiscal_grant_expenditure_total", _has("财政拨款", "支出", "合计")),
    FuzzyRule("fiscal_grant_revenue_total", _has("财政拨款", "收入", "合计")),

    FuzzyRule("budget_expenditure_project", _has("项目支出")),
    FuzzyRule("budget_expenditure_basic", _has("基本支出")),
    FuzzyRule(
        "budget_expenditure_total",
        lambda t: "支出" in t and ("总计" in t or "合计" in t or "本年支出" in t),
    ),

    FuzzyRule("budget_revenue_fiscal", _has("财政拨款收入")),
    FuzzyRule("budget_revenue_business", _has("事业收入")),
    FuzzyRule("budget_revenue_operation", _has("经营收入")),
    FuzzyRule("budget_revenue_other", _has("其他收入")),
    FuzzyRule(
        "budget_revenue_total",
        lambda t: "收入" in t and ("总计" in t or "合计" in t or "本年收入" in t),
    ),
)


@dataclass(frozen=True)
class Resolution:
    key: Optional[str]
    confidence: Confidence
    source: Optional[str]
    normalized_label: str

    @property
    def matched(self) -> bool:
        return self.key is not None


class AliasResolver:
    """
    Pure resolver over a snapshot of approved mappings ({normalized_label: key}).
    Load one per batch with `load_resolver`; it never touches the database itself.
    """

    def __init__(self, approved: Optional[dict[str, str]] = None):
        self.approved = dict(approved or {})

    def resolve(self, label: Optional[str]) -> Resolution:
        normalized = normalize_text(label)
        if not normalized:
            return Resolution(None, Confidence.UNRECOGNIZED, None, normalized)

        if normalized in self.approved:
            return Resolution(self.approved[normalized], Confidence.HIGH, SOURCE_CUSTOM, normalized)

        if normalized in EXACT_ALIAS_MAP:
            return Resolution(EXACT_ALIAS_MAP[normalized], Confidence.HIGH, SOURCE_EXACT, normalized)

        # Canonical keys are accepted verbatim (manual items, AI output)
        if normalized in CANONICAL_KEYS:
            return Resolution(normalized, Confidence.HIGH, SOURCE_EXACT, normalized)

        for rule in FUZZY_RULES:
            if rule.test(normalized):
                return Resolution(rule.key, Confidence.LOW, SOURCE_FUZZY, normalized)

        return Resolution(None, Confidence.UNRECOGNIZED, None, normalized)


# Labels this close to a known alias become review candidates
BEST_GUESS_MIN_SCORE = 80


def best_guess_key(label: Optional[str]) -> Optional[str]:
    """
    Key of the closest built-in alias by edit similarity, or None below
    BEST_GUESS_MIN_SCORE. Only used to propose candidates, never to resolve.
    """
    normalized = normalize_text(label)
    if not normalized:
        return None
    best_key, best_score = None, 0.0
    for alias, key in EXACT_ALIAS_MAP.items():
        score = fuzz.ratio(normalized, alias)
        if score > best_score:
            best_key, best_score = key, score
    return best_key if best_score >= BEST_GUESS_MIN_SCORE else None


# ────────────────────────────────────────────────────────────
# Persistence
# ────────────────────────────────────────────────────────────

async def load_resolver(session: AsyncSession) -> AliasResolver:
    """Snapshot APPROVED mappings into a resolver."""
    result = await session.execute(
        select(AliasMapping.normalized_label, AliasMapping.resolved_key)
        .where(AliasMapping.status == AliasStatus.APPROVED.value)
        .order_by(AliasMapping.updated_at)
    )
    # Later approvals of the same label win
    approved = {label: key for label, key in result.all()}
    return AliasResolver(approved)


async def record_candidate(
    session: AsyncSession,
    raw_label: str,
    resolved_key: str,
    source_batch_id: Optional[uuid.UUID] = None,
) -> Optional[AliasMapping]:
    """
    Upsert a CANDIDATE mapping for a label a reviewer tied to a key.
    Existing APPROVED/REJECTED mappings are returned untouched.
    """
    normalized = normalize_text(raw_label)
    if not normalized or not resolved_key:
        return None

    result = await session.execute(
        select(AliasMapping).where(
            AliasMapping.normalized_label == normalized,
            AliasMapping.resolved_key == resolved_key,
        )
    )
    mapping = result.scalar_one_or_none()

    if mapping is None:
        mapping = AliasMapping(
            raw_label=raw_label,
            normalized_label=normalized,
            resolved_key=resolved_key,
            status=AliasStatus.CANDIDATE.value,
            source_batch_id=source_batch_id,
        )
        session.add(mapping)
        await session.flush()
        logger.info(
            "alias_candidate_recorded",
            alias_id=str(mapping.id),
            normalized_label=normalized,
            resolved_key=resolved_key,
        )
    elif mapping.status == AliasStatus.CANDIDATE.value:
        mapping.raw_label = raw_label
        mapping.source_batch_id = source_batch_id or mapping.source_batch_id
        await session.flush()

    return mapping


async def set_alias_status(session: AsyncSession, alias_id: uuid.UUID, status: AliasStatus) -> AliasMapping:
    """
    Approve or reject a mapping. Idempotent; concurrent reviewers are
    last-write-wins.
    """
    mapping = await session.get(AliasMapping, alias_id)
    if mapping is None:
        raise AliasNotFoundError(str(alias_id))

    if mapping.status == status.value:
        return mapping

    previous = mapping.status
    mapping.status = status.value
    mapping.approved_at = datetime.now(timezone.utc) if status == AliasStatus.APPROVED else None
    await session.flush()

    logger.info(
        "alias_status_changed",
        alias_id=str(mapping.id),
        from_status=previous,
        to_status=status.value,
        resolved_key=mapping.resolved_key,
    )
    return mapping


async def list_aliases(
    session: AsyncSession,
    status: Optional[AliasStatus] = None,
    limit: int = 200,
    offset: int = 0,
) -> list[AliasMapping]:
    query = select(AliasMapping).order_by(AliasMapping.created_at.desc(), AliasMapping.normalized_label)
    if status is not None:
        query = query.where(AliasMapping.status == status.value)
    result = await session.execute(query.offset(offset).limit(limit))
    return list(result.scalars().all())


async def refresh_alias_gauge(session: AsyncSession) -> dict[str, int]:
    """Publish mapping counts per status."""
    result = await session.execute(
        select(AliasMapping.status, func.count(AliasMapping.id)).group_by(AliasMapping.status)
    )
    counts = {row[0]: row[1] for row in result.all()}
    for status in AliasStatus:
        alias_mappings.labels(status=status.value).set(counts.get(status.value, 0))
    return counts
