"""
Validation rule engine.

`validate_fields` is a pure function of a batch's fields (authoritative
values) and the context gathered around them. `run_batch_validation`
gathers that context from the database and replaces the batch's issues.

Rules:
- FIELD_COVERAGE                  ERROR  required keys without a value
- BALANCE_REVENUE_EXPENDITURE     ERROR  revenue total != expenditure total
- BALANCE_EXPENDITURE_COMPONENTS  ERROR  expenditure total != basic + project
- BALANCE_FISCAL_GRANT            ERROR  fiscal-grant revenue != expenditure
- BALANCE_THREE_PUBLIC            ERROR  three-public total != outbound + reception + vehicle
- BALANCE_THREE_PUBLIC_VEHICLE    ERROR  vehicle total != purchase + operation
- YOY_ANOMALY                     WARN   |cur - prev| / |prev| above threshold
- MANUAL_CONFLICT                 WARN   (ERROR when its key fails a rule above)
- UNMATCHED_LABEL                 WARN
- DUAL_SOURCE_CONFLICT            WARN
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import HistoryStage, IssueLevel, RuleId
from app.models.tables import ExtractionBatch, HistoryActual, ValidationIssue
from app.observability.metrics import validation_issues_total

logger = structlog.get_logger(__name__)


@dataclass
class IssueDraft:
    rule_id: RuleId
    level: IssueLevel
    message: str
    evidence: dict[str, Any] = field(default_factory=dict)
    # Keys this issue is about; used for MANUAL_CONFLICT escalation
    keys: tuple[str, ...] = ()


def authoritative_value(f) -> Optional[Decimal]:
    """Corrected value once the reviewer confirmed it, else the extracted value."""
    if f.confirmed and f.corrected_value is not None:
        return f.corrected_value
    return f.normalized_value


def _num(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def _check_balance(
    issues: list[IssueDraft],
    rule_id: RuleId,
    message: str,
    left_key: str,
    left: Optional[Decimal],
    right_keys: tuple[str, ...],
    right_values: tuple[Optional[Decimal], ...],
    tolerance: Decimal,
    extra: Optional[dict] = None,
) -> None:
    if left is None or any(v is None for v in right_values):
        return
    right = sum(right_values, Decimal("0"))
    diff = left - right
    if abs(diff) <= tolerance:
        return
    evidence = {left_key: _num(left)}
    evidence.update({k: _num(v) for k, v in zip(right_keys, right_values)})
    evidence.update(extra or {})
    if len(right_keys) > 1:
        evidence["components_sum"] = _num(right)
    evidence["diff"] = _num(diff)
    issues.append(IssueDraft(rule_id, IssueLevel.ERROR, message, evidence, (left_key, *right_keys)))


def validate_fields(
    fields: Iterable,
    previous_year_values: Optional[dict[str, Decimal]] = None,
    manual_conflicts: Optional[list[dict]] = None,
    unmatched_labels: Optional[list[str]] = None,
    dual_conflicts: Optional[list[dict]] = None,
    tolerance: Optional[float] = None,
    required_keys: Optional[list[str]] = None,
    prev_year: Optional[int] = None,
) -> list[IssueDraft]:
    """
    Args:
        fields: objects with key, normalized_value, corrected_value, confirmed
        previous_year_values: FINAL history values for year - 1, by key
        manual_conflicts: [{key, label, manual_value, auto_value}]
        dual_conflicts: [{key, structured_value, raw_text_value}]
    """
    tol = Decimal(str(settings.BALANCE_TOLERANCE if tolerance is None else tolerance))
    required = settings.required_field_keys if required_keys is None else required_keys
    values: dict[str, Optional[Decimal]] = {f.key: authoritative_value(f) for f in fields}
    issues: list[IssueDraft] = []

    # Coverage
    missing = [k for k in required if values.get(k) is None]
    if missing:
        issues.append(IssueDraft(
            RuleId.FIELD_COVERAGE,
            IssueLevel.ERROR,
            f"必填字段缺失：{', '.join(missing)}",
            {"missing_keys": missing},
            tuple(missing),
        ))

    # Balances
    revenue = values.get("budget_revenue_total")
    expenditure = values.get("budget_expenditure_total")
    _check_balance(
        issues, RuleId.BALANCE_REVENUE_EXPENDITURE, "收入预算合计与支出预算合计不一致",
        "budget_revenue_total", revenue,
        ("budget_expenditure_total",), (expenditure,), tol,
    )
    _check_balance(
        issues, RuleId.BALANCE_EXPENDITURE_COMPONENTS, "支出预算合计不等于基本支出与项目支出之和",
        "budget_expenditure_total", expenditure,
        ("budget_expenditure_basic", "budget_expenditure_project"),
        (values.get("budget_expenditure_basic"), values.get("budget_expenditure_project")), tol,
    )
    _check_balance(
        issues, RuleId.BALANCE_FISCAL_GRANT, "财政拨款收入合计与财政拨款支出合计不一致",
        "fiscal_grant_revenue_total", values.get("fiscal_grant_revenue_total"),
        ("fiscal_grant_expenditure_total",), (values.get("fiscal_grant_expenditure_total"),), tol,
    )
    _check_balance(
        issues, RuleId.BALANCE_THREE_PUBLIC, "“三公”经费合计不等于因公出国（境）费、公务接待费与公务用车费之和",
        "three_public_total", values.get("three_public_total"),
        ("three_public_outbound", "three_public_reception", "three_public_vehicle_total"),
        tuple(values.get(k) for k in ("three_public_outbound", "three_public_reception", "three_public_vehicle_total")),
        tol,
    )
    _check_balance(
        issues, RuleId.BALANCE_THREE_PUBLIC_VEHICLE, "公务用车购置及运行费不等于购置费与运行费之和",
        "three_public_vehicle_total", values.get("three_public_vehicle_total"),
        ("three_public_vehicle_purchase", "three_public_vehicle_operation"),
        (values.get("three_public_vehicle_purchase"), values.get("three_public_vehicle_operation")), tol,
    )

    # Year over year
    threshold = Decimal(str(settings.YOY_RATIO_THRESHOLD))
    for key, current in values.items():
        previous = (previous_year_values or {}).get(key)
        if current is None or previous is None or previous == 0:
            continue
        ratio = abs((current - previous) / previous)
        if ratio > threshold:
            issues.append(IssueDraft(
                RuleId.YOY_ANOMALY,
                IssueLevel.WARN,
                f"{key} 与上一年度偏差超过 {threshold * 100:.0f}%",
                {
                    "key": key,
                    "current": _num(current),
                    "previous": _num(previous),
                    "ratio": round(float(ratio), 4),
                    "prev_year": prev_year,
                },
                (key,),
            ))

    failing_keys = {
        k for issue in issues if issue.level == IssueLevel.ERROR for k in issue.keys
    }

    for conflict in manual_conflicts or []:
        key = conflict.get("key")
        escalated = key in failing_keys
        issues.append(IssueDraft(
            RuleId.MANUAL_CONFLICT,
            IssueLevel.ERROR if escalated else IssueLevel.WARN,
            f"{key} 手工填报值与自动提取值不一致",
            {**conflict, "escalated": escalated},
            (key,),
        ))

    for label in unmatched_labels or []:
        issues.append(IssueDraft(
            RuleId.UNMATCHED_LABEL,
            IssueLevel.WARN,
            f"无法识别的字段标签：{label}",
            {"label": label},
        ))

    for conflict in dual_conflicts or []:
        key = conflict.get("key")
        issues.append(IssueDraft(
            RuleId.DUAL_SOURCE_CONFLICT,
            IssueLevel.WARN,
            f"{key} 表格值与原文值不一致",
            dict(conflict),
            (key,),
        ))

    return issues


async def previous_year_values(
    session: AsyncSession, unit_id: str, year: int, keys: list[str]
) -> dict[str, Decimal]:
    if not keys:
        return {}
    result = await session.execute(
        select(HistoryActual.key, HistoryActual.value_numeric).where(
            HistoryActual.unit_id == unit_id,
            HistoryActual.year == year - 1,
            HistoryActual.stage == HistoryStage.FINAL.value,
            HistoryActual.key.in_(keys),
        )
    )
    return {key: value for key, value in result.all() if value is not None}


async def run_batch_validation(session: AsyncSession, batch: ExtractionBatch) -> list[ValidationIssue]:
    """
    Re-run every rule against the batch's current fields and replace its
    stored issues. The caller owns the transaction.
    """
    await session.refresh(batch, ["fields", "issues"])
    summary = batch.reconciliation_summary or {}
    confirmed_keys = {f.key for f in batch.fields if f.confirmed}

    history = await previous_year_values(session, batch.unit_id, batch.year, [f.key for f in batch.fields])
    drafts = validate_fields(
        batch.fields,
        previous_year_values=history,
        manual_conflicts=summary.get("manual_conflict_items", []),
        unmatched_labels=summary.get("unmatched_labels", []),
        # A reviewer confirmation settles a table/raw-text disagreement
        dual_conflicts=[c for c in summary.get("dual_conflict_items", []) if c.get("key") not in confirmed_keys],
        prev_year=batch.year - 1,
    )

    batch.issues = [
        ValidationIssue(
            rule_id=d.rule_id.value,
            level=d.level.value,
            message=d.message,
            evidence=d.evidence,
        )
        for d in drafts
    ]
    await session.flush()

    for d in drafts:
        validation_issues_total.labels(rule_id=d.rule_id.value, level=d.level.value).inc()

    logger.info(
        "batch_validated",
        batch_id=str(batch.id),
        errors=sum(1 for d in drafts if d.level == IssueLevel.ERROR),
        warnings=sum(1 for d in drafts if d.level == IssueLevel.WARN),
    )
    return batch.issues
