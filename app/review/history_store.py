"""
Historical actuals store.
Committed batches and direct fact saves land here as FINAL-stage rows,
one per (unit_id, year, stage, key).
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import HistoryStage
from app.models.tables import HistoryActual
from app.pipeline.alias_resolver import AliasResolver

logger = structlog.get_logger(__name__)

PROVENANCE_BATCH_COMMIT = "archive_batch_commit"
PROVENANCE_DIRECT_SAVE = "archive_direct_save"


class SqlHistoryStore:
    """Upserts run inside the caller's transaction; nothing here commits."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def write_facts(
        self,
        unit_id: str,
        year: int,
        facts: dict[str, Optional[Decimal]],
        batch_id: Optional[uuid.UUID] = None,
        provenance: str = PROVENANCE_BATCH_COMMIT,
        stage: HistoryStage = HistoryStage.FINAL,
    ) -> int:
        """Upsert by (unit_id, year, stage, key). None values are skipped. Returns rows written."""
        facts = {k: v for k, v in facts.items() if v is not None}
        if not facts:
            return 0

        result = await self.session.execute(
            select(HistoryActual).where(
                HistoryActual.unit_id == unit_id,
                HistoryActual.year == year,
                HistoryActual.stage == stage.value,
                HistoryActual.key.in_(list(facts)),
            )
        )
        existing = {row.key: row for row in result.scalars().all()}

        for key, value in facts.items():
            row = existing.get(key)
            if row is None:
                self.session.add(HistoryActual(
                    unit_id=unit_id,
                    year=year,
                    stage=stage.value,
                    key=key,
                    value_numeric=value,
                    provenance_source=provenance,
                    source_batch_id=batch_id,
                ))
            else:
                row.value_numeric = value
                row.provenance_source = provenance
                row.source_batch_id = batch_id
        await self.session.flush()

        logger.info(
            "history_facts_written",
            unit_id=unit_id,
            year=year,
            count=len(facts),
            source_batch_id=str(batch_id) if batch_id else None,
        )
        return len(facts)

    async def delete_facts_for_batch(self, batch_id: uuid.UUID) -> int:
        result = await self.session.execute(
            delete(HistoryActual)
            .where(HistoryActual.source_batch_id == batch_id)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info("history_facts_deleted", source_batch_id=str(batch_id), count=deleted)
        return deleted


async def save_budget_facts(
    session: AsyncSession,
    unit_id: str,
    year: int,
    items: list,
    resolver: AliasResolver,
) -> tuple[int, list[str]]:
    """
    Resolve free-form {key, value} items (labels or canonical keys) and write
    them straight to history. Returns (mapped_count, unmatched labels).
    """
    facts: dict[str, Decimal] = {}
    unmatched: list[str] = []
    for item in items:
        resolution = resolver.resolve(item.key)
        if not resolution.matched:
            unmatched.append(item.key)
            continue
        if item.value is not None:
            facts[resolution.key] = Decimal(str(item.value))

    written = await SqlHistoryStore(session).write_facts(
        unit_id, year, facts, provenance=PROVENANCE_DIRECT_SAVE,
    )
    return written, unmatched
