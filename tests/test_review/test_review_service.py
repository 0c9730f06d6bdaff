"""
Tests for the review/commit operations on extraction batches.
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.models.enums import AliasStatus, BatchStatus, Confidence, IssueLevel, RuleId
from app.models.tables import CorrectionFeedback, ExtractedField, HistoryActual, ValidationIssue
from app.pipeline.alias_resolver import list_aliases, load_resolver, record_candidate, set_alias_status
from app.pipeline.orchestrator import BatchPipeline
from app.review.batches import (
    BatchNotFoundError,
    CommitBlockedError,
    FieldNotFoundError,
    InvalidTransitionError,
    StaleWriteError,
    commit_batch,
    concurrency_token,
    delete_batch,
    get_batch,
    list_batches,
    patch_field,
    reject_batch,
)
from app.review.history_store import save_budget_facts
from app.schemas.batches import ManualItem


async def create(session, document, unit_id="unit-1", year=2024, **kwargs):
    return await BatchPipeline().create_batch(session, document.path, unit_id, year, document=document, **kwargs)


def field_of(batch, key):
    return next(f for f in batch.fields if f.key == key)


def rule_ids(batch):
    return {i.rule_id for i in batch.issues}


async def count(session, model, *where):
    return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


class TestPatchField:
    """Test corrections, confirmations and the concurrency token."""

    async def test_correction_round_trip(self, session, summary_document, small_required_keys):
        batch = await create(session, summary_document)
        await patch_field(
            session, batch.id, "budget_revenue_total", concurrency_token(batch), corrected_value=Decimal("55.5"),
        )

        reloaded = await get_batch(session, batch.id)
        target = field_of(reloaded, "budget_revenue_total")
        assert target.corrected_value == Decimal("55.5")
        assert target.normalized_value == Decimal("100")
        assert target.confirmed
        assert await count(session, CorrectionFeedback, CorrectionFeedback.batch_id == batch.id) == 1

    async def test_correction_revalidates(self, session, summary_document, small_required_keys):
        batch = await create(session, summary_document)
        assert RuleId.DUAL_SOURCE_CONFLICT.value in rule_ids(batch)

        batch = await patch_field(
            session, batch.id, "budget_revenue_total", concurrency_token(batch), corrected_value=Decimal("55.5"),
        )
        ids = rule_ids(batch)
        assert RuleId.BALANCE_REVENUE_EXPENDITURE.value in ids
        # A confirmed field settles its table/raw-text disagreement
        assert RuleId.DUAL_SOURCE_CONFLICT.value not in ids

    async def test_token_advances(self, session, summary_document):
        batch = await create(session, summary_document)
        before = concurrency_token(batch)
        batch = await patch_field(session, batch.id, "budget_revenue_total", before, confirmed=True)
        assert concurrency_token(batch) > before

    async def test_stale_token(self, session, summary_document):
        batch = await create(session, summary_document)
        token = concurrency_token(batch)
        await patch_field(session, batch.id, "budget_revenue_total", token, confirmed=True)
        with pytest.raises(StaleWriteError):
            await patch_field(session, batch.id, "budget_revenue_total", token, corrected_value=Decimal("1"))

    async def test_unknown_field(self, session, summary_document):
        batch = await create(session, summary_document)
        with pytest.raises(FieldNotFoundError):
            await patch_field(session, batch.id, "nope", concurrency_token(batch), confirmed=True)

    async def test_unknown_batch(self, session):
        with pytest.raises(BatchNotFoundError):
            await patch_field(session, uuid.uuid4(), "budget_revenue_total", "x", confirmed=True)

    async def test_auto_advance_and_back(self, session, summary_document):
        batch = await create(session, summary_document)
        assert batch.status == BatchStatus.PENDING_REVIEW.value

        for key in [f.key for f in batch.fields if not f.confirmed]:
            batch = await patch_field(session, batch.id, key, concurrency_token(batch), confirmed=True)
        assert batch.status == BatchStatus.REVIEWED.value
        assert batch.reviewed_at is not None

        batch = await patch_field(
            session, batch.id, "budget_revenue_total", concurrency_token(batch), confirmed=False,
        )
        assert batch.status == BatchStatus.PENDING_REVIEW.value

    async def test_correction_records_alias_candidate(self, session, make_doc):
        doc = make_doc(raw_text="公务用车购置及运行经费 15.5")
        batch = await create(session, doc)
        assert field_of(batch, "three_public_vehicle_total").confidence == Confidence.LOW.value

        await patch_field(
            session, batch.id, "three_public_vehicle_total", concurrency_token(batch), corrected_value=Decimal("15.5"),
        )
        [candidate] = await list_aliases(session, status=AliasStatus.CANDIDATE)
        assert candidate.normalized_label == "公务用车购置及运行经费"
        assert candidate.resolved_key == "three_public_vehicle_total"
        assert candidate.source_batch_id == batch.id


class TestAliasLearning:
    async def test_approved_alias_resolves_high_next_time(self, session, make_doc):
        doc = make_doc(raw_text="公务用车购置及运行经费 15.5")
        first = await create(session, doc)
        assert field_of(first, "three_public_vehicle_total").confidence == Confidence.LOW.value

        mapping = await record_candidate(session, "公务用车购置及运行经费", "three_public_vehicle_total")
        await set_alias_status(session, mapping.id, AliasStatus.APPROVED)

        second = await create(session, doc)
        learned = field_of(second, "three_public_vehicle_total")
        assert learned.confidence == Confidence.HIGH.value
        assert learned.confirmed


class TestCommit:
    """Test commit gating and history writes."""

    async def test_commit_writes_history(self, session, full_document):
        batch = await create(session, full_document)
        assert not any(i.level == IssueLevel.ERROR.value for i in batch.issues)

        batch, written = await commit_batch(session, batch.id, concurrency_token(batch))
        assert batch.status == BatchStatus.COMMITTED.value
        assert batch.committed_at is not None
        assert written == sum(1 for f in batch.fields if f.normalized_value is not None)

        rows = (await session.execute(
            select(HistoryActual).where(HistoryActual.unit_id == "unit-1", HistoryActual.year == 2024)
        )).scalars().all()
        values = {r.key: r.value_numeric for r in rows}
        assert values["budget_revenue_total"] == Decimal("100")
        assert values["three_public_total"] == Decimal("17")
        assert all(r.source_batch_id == batch.id for r in rows)

    async def test_commit_uses_confirmed_correction(self, session, full_document):
        batch = await create(session, full_document)
        batch = await patch_field(
            session, batch.id, "operation_fund", concurrency_token(batch), corrected_value=Decimal("21"),
        )
        await commit_batch(session, batch.id, concurrency_token(batch))
        value = (await session.execute(
            select(HistoryActual.value_numeric).where(HistoryActual.key == "operation_fund")
        )).scalar_one()
        assert value == Decimal("21")

    async def test_blocked_by_errors(self, session, make_doc, summary_rows, small_required_keys):
        doc = make_doc(sheets=[("财务收支预算总表", summary_rows(revenue="100", expenditure="90"))])
        batch = await create(session, doc)

        with pytest.raises(CommitBlockedError) as exc:
            await commit_batch(session, batch.id, concurrency_token(batch))
        balance = next(i for i in exc.value.issues if i["rule_id"] == RuleId.BALANCE_REVENUE_EXPENDITURE.value)
        assert balance["evidence"]["diff"] == pytest.approx(10.0)
        assert await count(session, HistoryActual) == 0

        # Resolve both failing balances, then commit goes through
        batch = await get_batch(session, batch.id)
        assert batch.status == BatchStatus.PENDING_REVIEW.value
        for key in ("budget_expenditure_total", "fiscal_grant_expenditure_total"):
            batch = await patch_field(session, batch.id, key, concurrency_token(batch), corrected_value=Decimal("100"))
        batch, _ = await commit_batch(session, batch.id, concurrency_token(batch))
        assert batch.status == BatchStatus.COMMITTED.value

    async def test_committed_is_terminal(self, session, full_document):
        batch = await create(session, full_document)
        batch, _ = await commit_batch(session, batch.id, concurrency_token(batch))
        token = concurrency_token(batch)

        with pytest.raises(InvalidTransitionError):
            await commit_batch(session, batch.id, token)
        with pytest.raises(InvalidTransitionError):
            await reject_batch(session, batch.id, token)
        with pytest.raises(InvalidTransitionError):
            await patch_field(session, batch.id, "operation_fund", token, corrected_value=Decimal("1"))

    async def test_commit_after_reject(self, session, full_document):
        batch = await create(session, full_document)
        token = concurrency_token(batch)
        await reject_batch(session, batch.id, token)
        with pytest.raises(InvalidTransitionError):
            await commit_batch(session, batch.id, token)


class TestRejectAndDelete:
    async def test_reject(self, session, summary_document):
        batch = await create(session, summary_document)
        batch = await reject_batch(session, batch.id, concurrency_token(batch))
        assert batch.status == BatchStatus.REJECTED.value
        with pytest.raises(InvalidTransitionError):
            await patch_field(session, batch.id, "budget_revenue_total", concurrency_token(batch), confirmed=True)

    async def test_delete_committed_cascades(self, session, full_document):
        batch = await create(session, full_document)
        batch, written = await commit_batch(session, batch.id, concurrency_token(batch))
        batch_id = batch.id

        deleted = await delete_batch(session, batch_id, concurrency_token(batch))
        assert deleted == written > 0

        with pytest.raises(BatchNotFoundError):
            await get_batch(session, batch_id)
        assert await count(session, ExtractedField, ExtractedField.batch_id == batch_id) == 0
        assert await count(session, ValidationIssue, ValidationIssue.batch_id == batch_id) == 0
        assert await count(session, HistoryActual, HistoryActual.source_batch_id == batch_id) == 0

    async def test_delete_pending_keeps_history(self, session, summary_document):
        batch = await create(session, summary_document)
        assert await delete_batch(session, batch.id, concurrency_token(batch)) == 0

    async def test_delete_with_stale_token(self, session, summary_document):
        batch = await create(session, summary_document)
        token = concurrency_token(batch)
        await patch_field(session, batch.id, "budget_revenue_total", token, confirmed=True)
        with pytest.raises(StaleWriteError):
            await delete_batch(session, batch.id, token)
        assert (await get_batch(session, batch.id)).id == batch.id


class TestListBatches:
    async def test_filter_by_status(self, session, summary_document):
        a = await create(session, summary_document)
        await create(session, summary_document)
        await reject_batch(session, a.id, concurrency_token(a))

        rejected, total = await list_batches(session, status=BatchStatus.REJECTED)
        assert total == 1
        assert [b.id for b in rejected] == [a.id]

        everything, total = await list_batches(session)
        assert total == 2
        assert len(everything) == 2


class TestSaveFacts:
    async def test_direct_save_through_custom_alias(self, session):
        mapping = await record_candidate(session, "budget income custom", "budget_revenue_total")
        await set_alias_status(session, mapping.id, AliasStatus.APPROVED)

        written, unmatched = await save_budget_facts(
            session, "unit-9", 2024,
            [ManualItem(key="Budget Income Custom", value=Decimal("321.45")), ManualItem(key="单位负责人", value=Decimal("1"))],
            await load_resolver(session),
        )
        assert written == 1
        assert unmatched == ["单位负责人"]
        value = (await session.execute(
            select(HistoryActual.value_numeric).where(HistoryActual.unit_id == "unit-9")
        )).scalar_one()
        assert value == Decimal("321.45")

    async def test_upsert_by_key(self, session):
        resolver = await load_resolver(session)
        await save_budget_facts(session, "unit-9", 2024, [ManualItem(key="收入总计", value=Decimal("1"))], resolver)
        await save_budget_facts(session, "unit-9", 2024, [ManualItem(key="收入合计", value=Decimal("2"))], resolver)
        rows = (await session.execute(select(HistoryActual))).scalars().all()
        assert [(r.key, r.value_numeric) for r in rows] == [("budget_revenue_total", Decimal("2"))]
