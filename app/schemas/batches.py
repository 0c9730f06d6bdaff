"""
Pydantic request/response schemas for the /api/v1/batches, /aliases and
/facts endpoints, plus the OCR summary stored on each batch.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.models.enums import AliasStatus, ExtractionStrategy, OcrReason


# ── OCR ──────────────────────────────────────────────────────

class OcrSkip(BaseModel):
    """Why one suspicious table (or one of its pages) produced no OCR text."""
    table_key: str
    reason: OcrReason
    page_no: Optional[int] = None
    detail: Optional[str] = None
    error_code: Optional[str] = None


class OcrResult(BaseModel):
    """Outcome of one selective OCR run."""
    enabled: bool
    executed: bool = False
    reason: OcrReason
    table_text_by_key: dict[str, str] = Field(default_factory=dict)
    processed_tables: list[str] = Field(default_factory=list)
    skipped_tables: list[OcrSkip] = Field(default_factory=list)
    mock_mode: bool = False
    binary_status: Optional[dict[str, bool]] = None


class OcrSummary(BaseModel):
    """OcrResult without the recognized text, as stored on the batch."""
    enabled: bool
    executed: bool = False
    reason: OcrReason
    suspicious_table_keys: list[str] = Field(default_factory=list)
    processed_tables: list[str] = Field(default_factory=list)
    skipped_tables: list[OcrSkip] = Field(default_factory=list)
    matched_count: int = 0
    mock_mode: bool = False
    binary_status: Optional[dict[str, bool]] = None


# ── Request Schemas ──────────────────────────────────────────

class ManualItem(BaseModel):
    """A reviewer-supplied fact; key may be a canonical key or a Chinese label."""
    key: str
    value: Optional[Decimal] = None


class BatchCreateRequest(BaseModel):
    source_path: str
    unit_id: str
    year: int = Field(ge=1900, le=2200)
    pdf_path: Optional[str] = None
    report_type: str = "BUDGET"
    strategy: Optional[ExtractionStrategy] = None
    items: list[ManualItem] = Field(default_factory=list)
    # PDF page numbers per table key, for scanned PDFs paired with a workbook
    table_pages: dict[str, list[int]] = Field(default_factory=dict)


class BulkBatchCreateRequest(BaseModel):
    documents: list[BatchCreateRequest] = Field(min_length=1)


class TokenRequest(BaseModel):
    token: str


class FieldPatchRequest(BaseModel):
    token: str
    corrected_value: Optional[Decimal] = None
    confirmed: Optional[bool] = None


class AliasStatusUpdate(BaseModel):
    status: AliasStatus


class FactItem(BaseModel):
    key: str
    value: Optional[Decimal] = None


class SaveFactsRequest(BaseModel):
    unit_id: str
    year: int = Field(ge=1900, le=2200)
    items: list[FactItem] = Field(default_factory=list)


# ── Response Schemas ─────────────────────────────────────────

class FieldOut(BaseModel):
    key: str
    label: Optional[str] = None
    raw_value: Optional[str] = None
    normalized_value: Optional[Decimal] = None
    corrected_value: Optional[Decimal] = None
    value: Optional[Decimal] = None
    confidence: str
    match_source: Optional[str] = None
    raw_text_snippet: Optional[str] = None
    confirmed: bool

    model_config = {"from_attributes": True}


class IssueOut(BaseModel):
    rule_id: str
    level: str
    message: str
    evidence: Optional[dict[str, Any]] = None

    model_config = {"from_attributes": True}


class BatchSummary(BaseModel):
    """Lightweight batch summary for create/list endpoints."""
    batch_id: uuid.UUID
    status: str
    unit_id: str
    year: int
    file_name: Optional[str] = None
    extraction_strategy: str
    field_count: int = 0
    error_count: int = 0
    warn_count: int = 0
    token: str
    ocr_summary: Optional[dict[str, Any]] = None
    reconciliation_summary: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


class BatchDetail(BatchSummary):
    fields: list[FieldOut] = Field(default_factory=list)
    issues: list[IssueOut] = Field(default_factory=list)
    tables: list[dict[str, Any]] = Field(default_factory=list)
    structured_views: dict[str, Any] = Field(default_factory=dict)


class BatchListResponse(BaseModel):
    batches: list[BatchSummary]
    total: int
    limit: int
    offset: int


class BulkItemResult(BaseModel):
    source_path: str
    batch: Optional[BatchSummary] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class BulkCreateResponse(BaseModel):
    batch_count: int
    batches: list[BulkItemResult]


class CommitResponse(BaseModel):
    batch_id: uuid.UUID
    status: str
    token: str
    history_written: int


class DeleteResponse(BaseModel):
    batch_id: uuid.UUID
    deleted: bool = True
    deleted_history_actuals: int = 0


class AliasOut(BaseModel):
    id: uuid.UUID
    raw_label: str
    normalized_label: str
    resolved_key: str
    status: str
    source_batch_id: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SaveFactsResponse(BaseModel):
    mapped_count: int
    unmatched_count: int
    unmatched: list[str] = Field(default_factory=list)


class DiagnoseResponse(BaseModel):
    path: str
    ready: list[str]
    missing: list[dict[str, Any]]
