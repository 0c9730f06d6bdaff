"""
/api/v1/batches endpoints.
Batch creation, review (patch/commit/reject), listing and permanent delete.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, get_pipeline, verify_api_key
from app.models.enums import BatchStatus, IssueLevel
from app.models.tables import ExtractionBatch
from app.pipeline.document_loader import DocumentLoadError, load_document
from app.pipeline.orchestrator import BatchPipeline
from app.pipeline.table_builder import build_structured_view
from app.pipeline.table_localizer import diagnose, localize_tables
from app.pipeline.validation import authoritative_value
from app.review.batches import (
    CommitBlockedError,
    ReviewError,
    commit_batch,
    concurrency_token,
    delete_batch,
    get_batch,
    list_batches,
    patch_field,
    reject_batch,
)
from app.schemas.batches import (
    BatchCreateRequest,
    BatchDetail,
    BatchListResponse,
    BatchSummary,
    BulkBatchCreateRequest,
    BulkCreateResponse,
    BulkItemResult,
    CommitResponse,
    DeleteResponse,
    DiagnoseResponse,
    FieldOut,
    FieldPatchRequest,
    IssueOut,
    TokenRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["batches"], dependencies=[Depends(verify_api_key)])


# ── Helpers ──────────────────────────────────────────────────

def review_http_error(error: ReviewError) -> HTTPException:
    detail = {"code": error.code, "message": error.message}
    if isinstance(error, CommitBlockedError):
        detail["issues"] = error.issues
    code = status.HTTP_404_NOT_FOUND if error.code == "NOT_FOUND" else status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail=detail)


def load_error_http(error: DocumentLoadError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": error.error_code, "message": error.message},
    )


def batch_summary(batch: ExtractionBatch) -> BatchSummary:
    return BatchSummary(
        batch_id=batch.id,
        status=batch.status,
        unit_id=batch.unit_id,
        year=batch.year,
        file_name=batch.file_name,
        extraction_strategy=batch.extraction_strategy,
        field_count=len(batch.fields),
        error_count=sum(1 for i in batch.issues if i.level == IssueLevel.ERROR.value),
        warn_count=sum(1 for i in batch.issues if i.level == IssueLevel.WARN.value),
        token=concurrency_token(batch),
        ocr_summary=batch.ocr_summary,
        reconciliation_summary=batch.reconciliation_summary,
        created_at=batch.created_at,
    )


def batch_detail(batch: ExtractionBatch) -> BatchDetail:
    fields = []
    for f in batch.fields:
        out = FieldOut.model_validate(f)
        out.value = authoritative_value(f)
        fields.append(out)

    tables = batch.tables or []
    views = {}
    for table in tables:
        if table.get("status") != "READY":
            continue
        view = build_structured_view(table["key"], table.get("rows") or [])
        if view is not None:
            views[table["key"]] = view.model_dump()

    return BatchDetail(
        **batch_summary(batch).model_dump(),
        fields=fields,
        issues=[IssueOut.model_validate(i) for i in batch.issues],
        tables=tables,
        structured_views=views,
    )


# ── Creation ─────────────────────────────────────────────────

@router.post("/batches", response_model=BatchSummary, status_code=status.HTTP_201_CREATED)
async def create_batch(
    request: BatchCreateRequest,
    session: AsyncSession = Depends(get_db),
    pipeline: BatchPipeline = Depends(get_pipeline),
):
    """Run the extraction pipeline over one document."""
    try:
        batch = await pipeline.create_batch(
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
        raise load_error_http(e)
    return batch_summary(batch)


@router.post("/batches/bulk", response_model=BulkCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_batches_bulk(
    request: BulkBatchCreateRequest,
    session: AsyncSession = Depends(get_db),
    pipeline: BatchPipeline = Depends(get_pipeline),
):
    results = await pipeline.create_batches(session, request.documents)
    items = [
        BulkItemResult(
            source_path=req.source_path,
            batch=batch_summary(batch) if batch is not None else None,
            error_code=error.error_code if error is not None else None,
            error=error.message if error is not None else None,
        )
        for req, batch, error in results
    ]
    return BulkCreateResponse(
        batch_count=sum(1 for i in items if i.batch is not None),
        batches=items,
    )


# ── Reads ────────────────────────────────────────────────────

@router.get("/batches", response_model=BatchListResponse)
async def list_batches_endpoint(
    status_filter: Optional[BatchStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    batches, total = await list_batches(session, status_filter, limit, offset)
    return BatchListResponse(
        batches=[batch_summary(b) for b in batches],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/batches/{batch_id}", response_model=BatchDetail)
async def get_batch_endpoint(batch_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    """Fields, issues, OCR summary, table snapshot, structured views and the current token."""
    try:
        batch = await get_batch(session, batch_id)
    except ReviewError as e:
        raise review_http_error(e)
    return batch_detail(batch)


@router.get("/tables/diagnose", response_model=DiagnoseResponse)
async def diagnose_tables(path: str = Query(..., min_length=1)):
    """Which catalog tables a document is missing, with the sheets that came closest."""
    try:
        document = await asyncio.to_thread(load_document, path)
    except DocumentLoadError as e:
        raise load_error_http(e)
    candidates = localize_tables(document)
    return DiagnoseResponse(
        path=path,
        ready=[c.key for c in candidates if c.is_ready],
        missing=diagnose(candidates),
    )


# ── Review ───────────────────────────────────────────────────

@router.patch("/batches/{batch_id}/fields/{key}", response_model=BatchDetail)
async def patch_field_endpoint(
    batch_id: uuid.UUID,
    key: str,
    request: FieldPatchRequest,
    session: AsyncSession = Depends(get_db),
):
    if request.corrected_value is None and request.confirmed is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "EMPTY_PATCH", "message": "corrected_value or confirmed is required"},
        )
    try:
        batch = await patch_field(
            session, batch_id, key, request.token,
            corrected_value=request.corrected_value,
            confirmed=request.confirmed,
        )
    except ReviewError as e:
        raise review_http_error(e)
    return batch_detail(batch)


@router.post("/batches/{batch_id}/commit", response_model=CommitResponse)
async def commit_batch_endpoint(
    batch_id: uuid.UUID,
    request: TokenRequest,
    session: AsyncSession = Depends(get_db),
):
    try:
        batch, written = await commit_batch(session, batch_id, request.token)
    except ReviewError as e:
        raise review_http_error(e)
    return CommitResponse(
        batch_id=batch.id,
        status=batch.status,
        token=concurrency_token(batch),
        history_written=written,
    )


@router.post("/batches/{batch_id}/reject", response_model=BatchSummary)
async def reject_batch_endpoint(
    batch_id: uuid.UUID,
    request: TokenRequest,
    session: AsyncSession = Depends(get_db),
):
    try:
        batch = await reject_batch(session, batch_id, request.token)
    except ReviewError as e:
        raise review_http_error(e)
    return batch_summary(batch)


@router.delete("/batches/{batch_id}", response_model=DeleteResponse)
async def delete_batch_endpoint(
    batch_id: uuid.UUID,
    token: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_db),
):
    """Permanent delete. Also removes history rows a COMMITTED batch wrote."""
    try:
        deleted_history = await delete_batch(session, batch_id, token)
    except ReviewError as e:
        raise review_http_error(e)
    return DeleteResponse(batch_id=batch_id, deleted_history_actuals=deleted_history)
