"""
Review/commit operations on extraction batches.

Every write presents the concurrency token the caller last read (the batch's
updated_at as a UTC ISO string). A mismatch is a StaleWriteError; the caller
reloads and retries. Successful writes advance updated_at strictly.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.enums import BatchStatus, IssueLevel
from app.models.tables import CorrectionFeedback, ExtractionBatch, ValidationIssue
from app.observability.metrics import batch_transitions_total, stale_writes_total
from app.pipeline.alias_resolver import CANONICAL_KEYS, normalize_text, record_candidate
from app.pipeline.validation import authoritative_value, run_batch_validation
from app.review.history_store import SqlHistoryStore
from app.review.state_machine import can_transition, is_editable

logger = structlog.get_logger(__name__)


# ── Errors ───────────────────────────────────────────────────

class ReviewError(Exception):
    """Base for review failures; `code` is what the API reports."""

    code = "REVIEW_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code or self.code
        self.message = message
        super().__init__(f"{self.code}: {message}")


class BatchNotFoundError(ReviewError):
    code = "NOT_FOUND"


class StaleWriteError(ReviewError):
    code = "STALE_TOKEN"


class InvalidTransitionError(ReviewError):
    code = "INVALID_TRANSITION"


class FieldNotFoundError(ReviewError):
    code = "NOT_FOUND"


class CommitBlockedError(ReviewError):
    code = "VALIDATION_BLOCKED"

    def __init__(self, message: str, issues: list[dict]):
        super().__init__(message)
        self.issues = issues


# ── Concurrency token ────────────────────────────────────────

def _utc_naive(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; treat those as UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def concurrency_token(batch: ExtractionBatch) -> str:
    return _utc_naive(batch.updated_at).isoformat(timespec="microseconds")


def next_timestamp(previous: Optional[datetime]) -> datetime:
    """now(), or 1µs past the previous value when the clock has not moved on."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    if previous is not None:
        floor = _utc_naive(previous) + timedelta(microseconds=1)
        now = max(now, floor)
    return now.replace(tzinfo=timezone.utc)


async def _claim(session: AsyncSession, batch: ExtractionBatch, token: str, operation: str) -> None:
    """
    Check the caller's token and advance it in one conditional UPDATE, so two
    writers holding the same token cannot both succeed.
    """
    if token != concurrency_token(batch):
        stale_writes_total.labels(operation=operation).inc()
        raise StaleWriteError(
            f"batch {batch.id} changed since it was read (token {token!r}, current {concurrency_token(batch)!r})"
        )

    observed = batch.updated_at
    advanced = next_timestamp(observed)
    result = await session.execute(
        update(ExtractionBatch)
        .where(ExtractionBatch.id == batch.id, ExtractionBatch.updated_at == observed)
        .values(updated_at=advanced)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        stale_writes_total.labels(operation=operation).inc()
        raise StaleWriteError(f"batch {batch.id} was modified concurrently")
    batch.updated_at = advanced


def _transition(batch: ExtractionBatch, target: BatchStatus) -> None:
    current = BatchStatus(batch.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(f"cannot move batch from {current.value} to {target.value}")
    batch.status = target.value
    batch_transitions_total.labels(from_status=current.value, to_status=target.value).inc()
    logger.info("batch_transition", batch_id=str(batch.id), from_status=current.value, to_status=target.value)


def _require_editable(batch: ExtractionBatch) -> None:
    if not is_editable(BatchStatus(batch.status)):
        raise InvalidTransitionError(f"batch is {batch.status}; its fields can no longer change")


# ── Reads ────────────────────────────────────────────────────

async def get_batch(session: AsyncSession, batch_id: uuid.UUID) -> ExtractionBatch:
    result = await session.execute(
        select(ExtractionBatch)
        .where(ExtractionBatch.id == batch_id)
        .options(selectinload(ExtractionBatch.fields), selectinload(ExtractionBatch.issues))
        .execution_options(populate_existing=True)
    )
    batch = result.scalar_one_or_none()
    if batch is None:
        raise BatchNotFoundError(f"batch {batch_id} not found")
    return batch


async def list_batches(
    session: AsyncSession,
    status: Optional[BatchStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ExtractionBatch], int]:
    query = select(ExtractionBatch)
    count_query = select(func.count(ExtractionBatch.id))
    if status is not None:
        query = query.where(ExtractionBatch.status == status.value)
        count_query = count_query.where(ExtractionBatch.status == status.value)

    total = (await session.execute(count_query)).scalar_one()
    result = await session.execute(
        query.options(selectinload(ExtractionBatch.fields), selectinload(ExtractionBatch.issues))
        .order_by(ExtractionBatch.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


# ── Writes ───────────────────────────────────────────────────

async def patch_field(
    session: AsyncSession,
    batch_id: uuid.UUID,
    key: str,
    token: str,
    corrected_value: Optional[Decimal] = None,
    confirmed: Optional[bool] = None,
) -> ExtractionBatch:
    """
    Set a reviewer correction and/or confirmation on one field, then
    re-validate. A correction without an explicit `confirmed` confirms the
    field. The batch moves to REVIEWED once every field is confirmed and back
    to PENDING_REVIEW when one is unconfirmed again.
    """
    batch = await get_batch(session, batch_id)
    _require_editable(batch)

    target = next((f for f in batch.fields if f.key == key), None)
    if target is None:
        raise FieldNotFoundError(f"field {key!r} not found in batch {batch_id}")

    await _claim(session, batch, token, "patch_field")

    if corrected_value is not None:
        session.add(CorrectionFeedback(
            batch_id=batch.id,
            field_key=key,
            raw_text=target.raw_text_snippet,
            predicted_value=target.normalized_value,
            corrected_value=corrected_value,
        ))
        target.corrected_value = corrected_value
        if confirmed is None:
            confirmed = True

        label = target.label or ""
        if label and normalize_text(label) != key and normalize_text(label) not in CANONICAL_KEYS:
            await record_candidate(session, label, key, source_batch_id=batch.id)

    if confirmed is not None:
        target.confirmed = confirmed

    await session.flush()
    await run_batch_validation(session, batch)

    all_confirmed = all(f.confirmed for f in batch.fields)
    status = BatchStatus(batch.status)
    if status == BatchStatus.PENDING_REVIEW and all_confirmed:
        _transition(batch, BatchStatus.REVIEWED)
        batch.reviewed_at = datetime.now(timezone.utc)
    elif status == BatchStatus.REVIEWED and not all_confirmed:
        _transition(batch, BatchStatus.PENDING_REVIEW)

    await session.flush()
    logger.info(
        "field_patched",
        batch_id=str(batch.id),
        key=key,
        corrected=corrected_value is not None,
        confirmed=target.confirmed,
    )
    return batch


async def commit_batch(session: AsyncSession, batch_id: uuid.UUID, token: str) -> tuple[ExtractionBatch, int]:
    """
    Re-validate, then write every field's authoritative value to history and
    mark the batch COMMITTED. Raises CommitBlockedError while ERROR issues remain.
    """
    batch = await get_batch(session, batch_id)
    if not can_transition(BatchStatus(batch.status), BatchStatus.COMMITTED):
        raise InvalidTransitionError(f"cannot commit a {batch.status} batch")

    await _claim(session, batch, token, "commit")

    issues = await run_batch_validation(session, batch)
    errors = [i for i in issues if i.level == IssueLevel.ERROR.value]
    if errors:
        raise CommitBlockedError(
            f"{len(errors)} validation error(s) must be resolved before commit",
            [_issue_dict(i) for i in errors],
        )

    facts = {f.key: authoritative_value(f) for f in batch.fields}
    written = await SqlHistoryStore(session).write_facts(batch.unit_id, batch.year, facts, batch_id=batch.id)

    _transition(batch, BatchStatus.COMMITTED)
    batch.committed_at = datetime.now(timezone.utc)
    await session.flush()

    logger.info("batch_committed", batch_id=str(batch.id), history_written=written)
    return batch, written


async def reject_batch(session: AsyncSession, batch_id: uuid.UUID, token: str) -> ExtractionBatch:
    batch = await get_batch(session, batch_id)
    if not can_transition(BatchStatus(batch.status), BatchStatus.REJECTED):
        raise InvalidTransitionError(f"cannot reject a {batch.status} batch")

    await _claim(session, batch, token, "reject")
    _transition(batch, BatchStatus.REJECTED)
    await session.flush()
    return batch


async def delete_batch(session: AsyncSession, batch_id: uuid.UUID, token: str) -> int:
    """
    Permanently delete a batch with its fields, issues and feedback.
    History rows it committed go first. Returns how many were removed.
    """
    batch = await get_batch(session, batch_id)
    await _claim(session, batch, token, "delete")

    deleted_history = 0
    if batch.status == BatchStatus.COMMITTED.value:
        deleted_history = await SqlHistoryStore(session).delete_facts_for_batch(batch.id)

    await session.delete(batch)
    await session.flush()

    logger.info("batch_deleted", batch_id=str(batch_id), deleted_history_actuals=deleted_history)
    return deleted_history


def _issue_dict(issue: ValidationIssue) -> dict:
    return {
        "rule_id": issue.rule_id,
        "level": issue.level,
        "message": issue.message,
        "evidence": issue.evidence,
    }
