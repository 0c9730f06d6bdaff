"""
Selective OCR fallback.

Re-reads only the PDF pages behind tables that looked wrong after text
extraction (no facts, or facts contradicting the raw text). Every early
exit is reported as a reason code rather than raised, and every page
failure is recorded per table so one bad page never sinks the run.

Reason precedence:
NO_SUSPICIOUS_TABLES > mock mode > OCR_DISABLED > PDF_NOT_FOUND
> OCR_BINARY_MISSING > per-table loop (OCR_APPLIED / OCR_NO_OUTPUT)
"""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import structlog

from app.config import settings
from app.engines.tesseract_engine import OcrError, TesseractEngine
from app.models.enums import OcrReason
from app.observability.metrics import ocr_pages_total, ocr_runs_total
from app.schemas.batches import OcrResult, OcrSkip
from app.schemas.contracts import BudgetTableCandidate

logger = structlog.get_logger(__name__)


def normalize_page_numbers(pages) -> list[int]:
    """Unique positive integers, ascending."""
    out = set()
    for page in pages or []:
        if isinstance(page, bool):
            continue
        try:
            number = float(page)
        except (TypeError, ValueError):
            continue
        if number.is_integer() and number > 0:
            out.add(int(number))
    return sorted(out)


def load_mock_text(mock_text: Optional[dict] = None) -> Optional[dict[str, str]]:
    """Mock OCR text by table key, from the argument or OCR_MOCK_TEXT_JSON."""
    source = mock_text
    if source is None and settings.OCR_MOCK_TEXT_JSON:
        try:
            source = json.loads(settings.OCR_MOCK_TEXT_JSON)
        except json.JSONDecodeError as e:
            logger.warning("ocr_mock_text_invalid", error=str(e))
            return None
    if not isinstance(source, dict):
        return None
    cleaned = {str(k): str(v).strip() for k, v in source.items() if k and v and str(v).strip()}
    return cleaned or None


def _finish(result: OcrResult) -> OcrResult:
    ocr_runs_total.labels(reason=result.reason.value).inc()
    logger.info(
        "selective_ocr_complete",
        reason=result.reason.value,
        executed=result.executed,
        processed=result.processed_tables,
        skipped=len(result.skipped_tables),
        mock_mode=result.mock_mode,
    )
    return result


async def run_selective_ocr(
    pdf_path: Optional[str],
    tables: list[BudgetTableCandidate],
    suspicious_table_keys: list[str],
    mock_text: Optional[dict] = None,
    engine: Optional[TesseractEngine] = None,
) -> OcrResult:
    keys = list(dict.fromkeys(k for k in suspicious_table_keys or [] if k))
    if not keys:
        return _finish(OcrResult(enabled=settings.OCR_ENABLED, reason=OcrReason.NO_SUSPICIOUS_TABLES))

    mock = load_mock_text(mock_text)
    if mock is not None:
        processed = [k for k in keys if k in mock]
        return _finish(OcrResult(
            enabled=True,
            executed=bool(processed),
            reason=OcrReason.MOCK_OCR if processed else OcrReason.MOCK_NO_MATCH,
            table_text_by_key={k: mock[k] for k in processed},
            processed_tables=processed,
            skipped_tables=[
                OcrSkip(table_key=k, reason=OcrReason.MOCK_TEXT_NOT_PROVIDED) for k in keys if k not in mock
            ],
            mock_mode=True,
        ))

    def skip_all(reason: OcrReason, **extra) -> OcrResult:
        return OcrResult(
            enabled=extra.pop("enabled", True),
            reason=reason,
            skipped_tables=[OcrSkip(table_key=k, reason=reason) for k in keys],
            **extra,
        )

    if not settings.OCR_ENABLED:
        return _finish(skip_all(OcrReason.OCR_DISABLED, enabled=False))

    if not pdf_path or not Path(pdf_path).is_file():
        return _finish(skip_all(OcrReason.PDF_NOT_FOUND))

    engine = engine or TesseractEngine()
    binary_status = engine.binary_status()
    if not engine.binaries_available(binary_status):
        return _finish(skip_all(OcrReason.OCR_BINARY_MISSING, binary_status=binary_status))

    by_key = {t.key: t for t in tables}
    skipped: list[OcrSkip] = []
    jobs: list[tuple[str, int]] = []
    for key in keys:
        table = by_key.get(key)
        if table is None or not table.is_ready:
            skipped.append(OcrSkip(table_key=key, reason=OcrReason.TABLE_NOT_FOUND))
            continue
        pages = normalize_page_numbers(table.page_numbers)
        if not pages:
            skipped.append(OcrSkip(table_key=key, reason=OcrReason.NO_PAGE_NUMBERS))
            continue
        jobs.extend((key, page_no) for page_no in pages)

    tmp_root = settings.OCR_TMP_DIR or os.path.join(tempfile.gettempdir(), "budget-ocr")
    os.makedirs(tmp_root, exist_ok=True)
    work_dir = tempfile.mkdtemp(prefix="run_", dir=tmp_root)
    semaphore = asyncio.Semaphore(max(1, settings.OCR_MAX_CONCURRENCY))

    async def ocr_one(key: str, page_no: int):
        async with semaphore:
            try:
                text = await asyncio.to_thread(engine.ocr_page, pdf_path, page_no, work_dir)
            except OcrError as e:
                ocr_pages_total.labels(outcome="failed").inc()
                logger.warning("ocr_page_failed", table_key=key, page_no=page_no, error_code=e.error_code, error=e.message)
                return key, page_no, None, e
            ocr_pages_total.labels(outcome="ok" if text.strip() else "empty").inc()
            return key, page_no, text.strip(), None

    # Every page finishes before the work dir goes, even when one of them crashed
    try:
        results = await asyncio.gather(*(ocr_one(k, p) for k, p in jobs), return_exceptions=True)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)
    for outcome in results:
        if isinstance(outcome, BaseException):
            raise outcome

    texts_by_key: dict[str, list[str]] = {}
    for key, page_no, text, error in results:
        if error is not None:
            skipped.append(OcrSkip(
                table_key=key,
                reason=OcrReason.OCR_PAGE_FAILED,
                page_no=page_no,
                detail=error.message,
                error_code=error.error_code,
            ))
        elif text:
            texts_by_key.setdefault(key, []).append(text)

    table_text: dict[str, str] = {}
    processed: list[str] = []
    for key in keys:
        if key not in by_key or not by_key[key].is_ready or not normalize_page_numbers(by_key[key].page_numbers):
            continue
        merged = "\n".join(texts_by_key.get(key, [])).strip()
        if not merged:
            skipped.append(OcrSkip(table_key=key, reason=OcrReason.EMPTY_OCR_TEXT))
            continue
        table_text[key] = merged
        processed.append(key)

    return _finish(OcrResult(
        enabled=True,
        executed=bool(processed),
        reason=OcrReason.OCR_APPLIED if processed else OcrReason.OCR_NO_OUTPUT,
        table_text_by_key=table_text,
        processed_tables=processed,
        skipped_tables=skipped,
        mock_mode=False,
    ))
