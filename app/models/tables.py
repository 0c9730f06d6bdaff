"""
SQLAlchemy ORM models.
Status columns are plain strings guarded by CHECK constraints so the same
metadata can be created on PostgreSQL and on SQLite for tests.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.database import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")


# ────────────────────────────────────────────────────────────
# EXTRACTION BATCHES
# ────────────────────────────────────────────────────────────
class ExtractionBatch(Base):
    __tablename__ = "extraction_batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source_document_id: Mapped[str] = mapped_column(Text, nullable=False)
    unit_id: Mapped[str] = mapped_column(Text, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    report_type: Mapped[str] = mapped_column(String(20), nullable=False, default="BUDGET")
    file_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pdf_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING_REVIEW")
    extraction_strategy: Mapped[str] = mapped_column(String(10), nullable=False, default="rule")
    ocr_summary: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    reconciliation_summary: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    tables: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    committed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    fields = relationship(
        "ExtractedField", back_populates="batch", cascade="all, delete-orphan",
        order_by="ExtractedField.key",
    )
    issues = relationship("ValidationIssue", back_populates="batch", cascade="all, delete-orphan")
    feedback = relationship("CorrectionFeedback", back_populates="batch", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING_REVIEW', 'REVIEWED', 'COMMITTED', 'REJECTED')",
            name="ck_batch_status",
        ),
        Index("idx_batches_status", "status"),
        Index("idx_batches_unit_year", "unit_id", "year"),
        Index("idx_batches_created", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# EXTRACTED FIELDS
# ────────────────────────────────────────────────────────────
class ExtractedField(Base):
    __tablename__ = "extracted_fields"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("extraction_batches.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    normalized_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    corrected_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    confidence: Mapped[str] = mapped_column(String(20), nullable=False, default="UNRECOGNIZED")
    match_source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_text_snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    # Relationships
    batch = relationship("ExtractionBatch", back_populates="fields")

    __table_args__ = (
        UniqueConstraint("batch_id", "key", name="uq_field_batch_key"),
        CheckConstraint(
            "confidence IN ('HIGH', 'MEDIUM', 'LOW', 'UNRECOGNIZED')",
            name="ck_field_confidence",
        ),
        Index("idx_fields_batch", "batch_id"),
    )


# ────────────────────────────────────────────────────────────
# VALIDATION ISSUES
# ────────────────────────────────────────────────────────────
class ValidationIssue(Base):
    __tablename__ = "validation_issues"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("extraction_batches.id", ondelete="CASCADE"), nullable=False
    )
    rule_id: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    # Relationships
    batch = relationship("ExtractionBatch", back_populates="issues")

    __table_args__ = (
        CheckConstraint("level IN ('ERROR', 'WARN')", name="ck_issue_level"),
        Index("idx_issues_batch", "batch_id"),
    )


# ────────────────────────────────────────────────────────────
# CORRECTION FEEDBACK
# ────────────────────────────────────────────────────────────
class CorrectionFeedback(Base):
    __tablename__ = "correction_feedback"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("extraction_batches.id", ondelete="CASCADE"), nullable=False
    )
    field_key: Mapped[str] = mapped_column(Text, nullable=False)
    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    predicted_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    corrected_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    # Relationships
    batch = relationship("ExtractionBatch", back_populates="feedback")

    __table_args__ = (
        Index("idx_feedback_batch", "batch_id"),
    )


# ────────────────────────────────────────────────────────────
# ALIAS MAPPINGS
# ────────────────────────────────────────────────────────────
class AliasMapping(Base):
    __tablename__ = "alias_mappings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    raw_label: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_label: Mapped[str] = mapped_column(Text, nullable=False)
    resolved_key: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="CANDIDATE")
    # No FK: mappings outlive the batch that discovered them
    source_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("normalized_label", "resolved_key", name="uq_alias_label_key"),
        CheckConstraint(
            "status IN ('CANDIDATE', 'APPROVED', 'REJECTED')",
            name="ck_alias_status",
        ),
        Index("idx_alias_status", "status"),
        Index("idx_alias_normalized", "normalized_label"),
    )


# ────────────────────────────────────────────────────────────
# HISTORY ACTUALS
# ────────────────────────────────────────────────────────────
class HistoryActual(Base):
    __tablename__ = "history_actuals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    unit_id: Mapped[str] = mapped_column(Text, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[str] = mapped_column(String(20), nullable=False, default="FINAL")
    key: Mapped[str] = mapped_column(Text, nullable=False)
    value_numeric: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    provenance_source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # No FK: the batch row is deleted after its facts are removed
    source_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("unit_id", "year", "stage", "key", name="uq_history_unit_year_stage_key"),
        Index("idx_history_source_batch", "source_batch_id"),
    )
