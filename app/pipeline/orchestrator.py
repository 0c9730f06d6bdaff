"""
Batch creation pipeline: turns one source document into a PENDING_REVIEW
extraction batch.

Stages: LOAD → LOCALIZE → EXTRACT → RECONCILE → OCR → PERSIST → VALIDATE
"""

import asyncio
import time
from contextlib import contextmanager
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.engines.ai_engine import AiAssistedExtractor
from app.engines.base import EngineError, FieldExtractor
from app.engines.rule_engine import RuleBasedExtractor, extract_text_facts
from app.models.enums import BatchStatus, ExtractionStrategy
from app.models.tables import ExtractedField, ExtractionBatch
from app.observability.metrics import (
    batch_creation_duration_seconds,
    batches_created_total,
    pipeline_stage_duration_seconds,
)
from app.pipeline.alias_resolver import AliasResolver, load_resolver, record_candidate
from app.pipeline.document_loader import DocumentLoadError, load_document
from app.pipeline.ocr_fallback import run_selective_ocr
from app.pipeline.reconciliation import Reconciliation, apply_ocr, reconcile
from app.pipeline.table_localizer import localize_tables
from app.pipeline.validation import run_batch_validation
from app.review.batches import next_timestamp
from app.schemas.batches import BatchCreateRequest, OcrSummary
from app.schemas.contracts import BudgetTableCandidate, ParsedDocument

logger = structlog.get_logger(__name__)


@contextmanager
def _stage(name: str):
    started = time.monotonic()
    try:
        yield
    finally:
        pipeline_stage_duration_seconds.labels(stage=name).observe(time.monotonic() - started)


def apply_table_pages(
    tables: list[BudgetTableCandidate],
    table_pages: Optional[dict[str, list[int]]],
) -> list[BudgetTableCandidate]:
    """Caller-supplied PDF pages override the pages mapped from the workbook."""
    if not table_pages:
        return tables
    return [
        t.model_copy(update={"page_numbers": list(table_pages[t.key])}) if t.key in table_pages else t
        for t in tables
    ]


def resolve_strategy(strategy: Optional[ExtractionStrategy]) -> ExtractionStrategy:
    if strategy is not None:
        return strategy
    return ExtractionStrategy(settings.DEFAULT_EXTRACTION_STRATEGY)


class BatchPipeline:
    """
    Runs the extraction pipeline for one document and persists the batch.

    Nothing is written until every extraction stage has finished, so a
    DocumentLoadError leaves the session clean.
    """

    def __init__(
        self,
        ai_extractor: Optional[AiAssistedExtractor] = None,
        ocr_engine=None,
    ):
        """
        Args:
            ai_extractor: Pre-built AI extractor (tests inject one with a mock transport)
            ocr_engine: TesseractEngine replacement for selective OCR
        """
        self.ai_extractor = ai_extractor
        self.ocr_engine = ocr_engine

    def _extractor(self, strategy: ExtractionStrategy, resolver: AliasResolver) -> FieldExtractor:
        if strategy == ExtractionStrategy.AI:
            if self.ai_extractor is not None:
                self.ai_extractor.resolver = resolver
                return self.ai_extractor
            return AiAssistedExtractor(resolver=resolver)
        return RuleBasedExtractor(resolver=resolver)

    async def create_batch(
        self,
        session: AsyncSession,
        source_path: str,
        unit_id: str,
        year: int,
        pdf_path: Optional[str] = None,
        items: Optional[list] = None,
        strategy: Optional[ExtractionStrategy] = None,
        report_type: str = "BUDGET",
        mock_ocr_text: Optional[dict] = None,
        document: Optional[ParsedDocument] = None,
        table_pages: Optional[dict[str, list[int]]] = None,
    ) -> ExtractionBatch:
        """
        Args:
            items: manual {key, value} facts supplied with the request
            mock_ocr_text: {table_key: text} used instead of running tesseract
            document: an already-parsed document; skips LOAD
            table_pages: {table_key: [page numbers]} in the PDF, for scans with no
                text layer to match sheet titles against
        """
        started = time.monotonic()
        strategy = resolve_strategy(strategy)
        logger.info("batch_pipeline_started", source_path=source_path, unit_id=unit_id, year=year, strategy=strategy.value)

        resolver = await load_resolver(session)

        # ── LOAD ──
        if document is None:
            with _stage("load"):
                document = await asyncio.to_thread(load_document, source_path, pdf_path)

        # ── LOCALIZE ──
        with _stage("localize"):
            tables = apply_table_pages(localize_tables(document), table_pages)

        # ── EXTRACT ──
        extraction_error = None
        with _stage("extract"):
            extractor = self._extractor(strategy, resolver)
            try:
                outcome = await extractor.extract(document, tables)
            except EngineError as e:
                if strategy != ExtractionStrategy.AI:
                    raise
                # Extraction is side-effect free; rerun with rules
                logger.warning("ai_strategy_fallback", error_code=e.error_code, error=e.message)
                extraction_error = {"engine_name": e.engine_name, "error_code": e.error_code, "message": e.message}
                strategy = ExtractionStrategy.RULE
                outcome = await RuleBasedExtractor(resolver=resolver).extract(document, tables)
            text_items, text_unmatched = extract_text_facts(document.raw_text, resolver)

        # ── RECONCILE ──
        with _stage("reconcile"):
            recon = reconcile(
                outcome, text_items, manual_items=items, resolver=resolver, text_unmatched=text_unmatched,
            )

        # ── OCR ──
        with _stage("ocr"):
            ocr = await run_selective_ocr(
                pdf_path or document.pdf_path,
                tables,
                recon.suspicious_table_keys,
                mock_text=mock_ocr_text,
                engine=self.ocr_engine,
            )
            matched = apply_ocr(recon, ocr, resolver=resolver)
            recon.finalize()

        ocr_summary = OcrSummary(
            **ocr.model_dump(exclude={"table_text_by_key"}),
            suspicious_table_keys=list(recon.suspicious_table_keys),
            matched_count=matched,
        )

        # ── PERSIST ──
        with _stage("persist"):
            summary = recon.summary()
            if extraction_error:
                summary["extraction_error"] = extraction_error
            batch = ExtractionBatch(
                source_document_id=document.path,
                unit_id=unit_id,
                year=year,
                report_type=report_type,
                file_name=document.file_name,
                source_path=source_path,
                pdf_path=pdf_path or document.pdf_path,
                raw_text=document.raw_text,
                status=BatchStatus.PENDING_REVIEW.value,
                extraction_strategy=strategy.value,
                ocr_summary=ocr_summary.model_dump(mode="json"),
                reconciliation_summary=summary,
                tables=[t.model_dump(mode="json") for t in tables],
                updated_at=next_timestamp(None),
                fields=self._field_rows(recon),
            )
            session.add(batch)
            await session.flush()
            for label, key in recon.alias_candidates:
                await record_candidate(session, label, key, source_batch_id=batch.id)

        # ── VALIDATE ──
        with _stage("validate"):
            issues = await run_batch_validation(session, batch)

        elapsed = time.monotonic() - started
        batch_creation_duration_seconds.observe(elapsed)
        batches_created_total.labels(strategy=strategy.value).inc()
        logger.info(
            "batch_created",
            batch_id=str(batch.id),
            file_name=batch.file_name,
            fields=len(batch.fields),
            issues=len(issues),
            suspicious=recon.suspicious_table_keys,
            ocr_reason=ocr.reason.value,
            duration_ms=int(elapsed * 1000),
        )
        return batch

    @staticmethod
    def _field_rows(recon: Reconciliation) -> list[ExtractedField]:
        return [
            ExtractedField(
                key=draft.key,
                label=draft.label or None,
                raw_value=draft.raw_value,
                normalized_value=draft.value,
                confidence=draft.confidence.value,
                match_source=draft.match_source or None,
                raw_text_snippet=draft.snippet,
                confirmed=draft.confirmed,
            )
            for draft in sorted(recon.fields.values(), key=lambda d: d.key)
        ]

    async def create_batches(
        self,
        session: AsyncSession,
        requests: list[BatchCreateRequest],
    ) -> list[tuple[BatchCreateRequest, Optional[ExtractionBatch], Optional[DocumentLoadError]]]:
        """One batch per request; documents that fail to load are reported, not raised."""
        results = []
        for request in requests:
            try:
                batch = await self.create_batch(
                    session,
                    request.source_path,
                    request.unit_id,
                    request.year,
                    pdf_path=request.pdf_path,
                    items=request.items,
                    strategy=request.strategy,
                    report_type=request.report_type,
                    table_pages=request.table_pages,
                )
            except DocumentLoadError as e:
                logger.warning("bulk_document_failed", source_path=request.source_path, error_code=e.error_code)
                results.append((request, None, e))
                continue
            results.append((request, batch, None))

        logger.info(
            "bulk_batches_created",
            requested=len(requests),
            created=sum(1 for _, batch, _ in results if batch is not None),
        )
        return results
