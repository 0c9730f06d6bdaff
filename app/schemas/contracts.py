"""
Core extraction contracts.
ParsedDocument is what every loader produces; every pipeline stage downstream
operates on these models, never on openpyxl/pdfplumber objects.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.models.enums import Confidence, TableStatus


class SourceSheet(BaseModel):
    """One worksheet, or one PDF page, as a grid of trimmed strings."""
    name: str
    title: str = ""
    rows: list[list[str]] = Field(default_factory=list)
    page_numbers: list[int] = Field(default_factory=list)


class ParsedDocument(BaseModel):
    """A loaded source document."""
    path: str
    file_name: str
    sheets: list[SourceSheet] = Field(default_factory=list)
    raw_text: str = ""
    pdf_path: Optional[str] = None


class NearMiss(BaseModel):
    """A sheet that scored for a table key but lost or fell under the threshold."""
    sheet_name: str
    score: float
    matched_keywords: list[str] = Field(default_factory=list)


class BudgetTableCandidate(BaseModel):
    """Localizer output for one catalog table key."""
    key: str
    title: str
    matched_sheet_or_page: Optional[str] = None
    status: TableStatus = TableStatus.MISSING
    row_count: int = 0
    col_count: int = 0
    rows: list[list[str]] = Field(default_factory=list)
    page_numbers: list[int] = Field(default_factory=list)
    score: float = 0.0
    matched_keywords: list[str] = Field(default_factory=list)
    near_misses: list[NearMiss] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def is_ready(self) -> bool:
        return self.status == TableStatus.READY


class HeaderCell(BaseModel):
    text: str
    col_span: int = 1
    row_span: int = 1


class TableMeta(BaseModel):
    org_label: str = "编制部门"
    org_value: str = ""
    unit_value: str = ""


class StructuredTableView(BaseModel):
    """Canonical, always well-formed projection of a candidate's grid."""
    table_key: str
    col_count: int
    numeric_columns: list[int]
    meta: TableMeta = Field(default_factory=TableMeta)
    header_rows: list[list[HeaderCell]] = Field(default_factory=list)
    body_rows: list[list[str]] = Field(default_factory=list)


class ExtractedItem(BaseModel):
    """
    One fact produced by a field extractor.
    `key` is None when the label could not be resolved to a canonical field.
    """
    key: Optional[str] = None
    label: str = ""
    value: Optional[Decimal] = None
    raw_value: Optional[str] = None
    confidence: Confidence = Confidence.UNRECOGNIZED
    snippet: Optional[str] = None
    source: str = ""


class ExtractionOutcome(BaseModel):
    """Result of running one extractor over a document."""
    engine_name: str
    items: list[ExtractedItem] = Field(default_factory=list)
    unmatched: list[ExtractedItem] = Field(default_factory=list)
    table_fact_counts: dict[str, int] = Field(default_factory=dict)

    def by_key(self) -> dict[str, ExtractedItem]:
        return {item.key: item for item in self.items if item.key}
