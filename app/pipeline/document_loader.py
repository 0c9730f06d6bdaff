"""
Source document loading.
Turns an .xlsx workbook (openpyxl) or a text-layer PDF (pdfplumber) into a
ParsedDocument: a list of string grids plus the document's raw text.
"""

import re
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import openpyxl
import pdfplumber
import structlog

from app.schemas.contracts import ParsedDocument, SourceSheet

logger = structlog.get_logger(__name__)

WORKBOOK_SUFFIXES = {".xlsx", ".xlsm"}
PDF_SUFFIXES = {".pdf"}


class DocumentLoadError(Exception):
    """Raised when a source document cannot be turned into a ParsedDocument."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


def cell_to_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def _first_non_empty_text(rows: list[list[str]]) -> str:
    for row in rows:
        text = "".join(c for c in row if c)
        if text:
            return text
    return ""


def _trim_grid(rows: list[list[str]]) -> list[list[str]]:
    """Drop fully empty rows and trailing empty cells."""
    out = []
    for row in rows:
        cells = list(row)
        while cells and not cells[-1]:
            cells.pop()
        if cells:
            out.append(cells)
    return out


def load_workbook_document(path: str) -> ParsedDocument:
    try:
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except Exception as e:
        raise DocumentLoadError("UNREADABLE", f"cannot open workbook {path}: {e}") from e

    sheets = []
    text_lines = []
    try:
        for sheet_name in wb.sheetnames:
            ws = wb[sheet_name]
            rows = _trim_grid(
                [[cell_to_text(v) for v in row] for row in ws.iter_rows(values_only=True)]
            )
            sheets.append(SourceSheet(
                name=sheet_name,
                title=_first_non_empty_text(rows),
                rows=rows,
            ))
            text_lines.extend(" ".join(c for c in row if c) for row in rows)
    finally:
        wb.close()

    logger.debug("workbook_loaded", path=path, sheet_count=len(sheets))
    return ParsedDocument(
        path=path,
        file_name=Path(path).name,
        sheets=sheets,
        raw_text="\n".join(text_lines),
    )


def load_pdf_document(path: str) -> ParsedDocument:
    sheets = []
    page_texts = []
    try:
        with pdfplumber.open(path) as pdf:
            for page_index, page in enumerate(pdf.pages):
                page_no = page_index + 1
                text = page.extract_text() or ""
                page_texts.append(text)

                tables = page.extract_tables() or []
                if tables:
                    rows = [[cell_to_text(c) for c in row] for row in tables[0]]
                else:
                    # No ruling lines: fall back to whitespace-separated text columns
                    rows = [re.split(r"\s{2,}|\t", line.strip()) for line in text.splitlines()]
                rows = _trim_grid(rows)

                lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
                sheets.append(SourceSheet(
                    name=f"page-{page_no}",
                    title=lines[0] if lines else "",
                    rows=rows,
                    page_numbers=[page_no],
                ))
    except Exception as e:
        raise DocumentLoadError("UNREADABLE", f"cannot open PDF {path}: {e}") from e

    raw_text = "\n".join(page_texts)
    logger.debug("pdf_loaded", path=path, page_count=len(sheets), text_chars=len(raw_text))
    return ParsedDocument(
        path=path,
        file_name=Path(path).name,
        sheets=sheets,
        raw_text=raw_text,
        pdf_path=path,
    )


def load_document(path: str, pdf_path: Optional[str] = None) -> ParsedDocument:
    """
    Load a source document by suffix.

    A workbook may be paired with the PDF it was printed to; the PDF is then
    only used for OCR fallback and its page numbers are attached to sheets
    whose titles appear on a PDF page.
    """
    source = Path(path)
    if not source.exists():
        raise DocumentLoadError("UNREADABLE", f"file not found: {path}")

    suffix = source.suffix.lower()
    if suffix in WORKBOOK_SUFFIXES:
        doc = load_workbook_document(path)
    elif suffix in PDF_SUFFIXES:
        doc = load_pdf_document(path)
    else:
        raise DocumentLoadError("UNSUPPORTED_FORMAT", f"unsupported file type: {suffix or '(none)'}")

    if pdf_path and doc.pdf_path is None:
        doc = _attach_pdf_pages(doc, pdf_path)

    if not doc.raw_text.strip() and not any(s.rows for s in doc.sheets):
        raise DocumentLoadError("NO_SOURCE_TEXT", f"no text or tables found in {source.name}")

    return doc


def _compact(text: str) -> str:
    return re.sub(r"\s+", "", text or "")


def _attach_pdf_pages(doc: ParsedDocument, pdf_path: str) -> ParsedDocument:
    """Map each sheet to the PDF pages whose text contains its title."""
    try:
        with pdfplumber.open(pdf_path) as pdf:
            page_texts = [_compact(p.extract_text() or "") for p in pdf.pages]
    except Exception as e:
        # OCR will report PDF_NOT_FOUND later; the workbook itself is still usable
        logger.warning("pdf_attach_failed", pdf_path=pdf_path, error=str(e))
        return doc.model_copy(update={"pdf_path": pdf_path})

    sheets = [
        sheet.model_copy(update={"page_numbers": pages})
        for sheet, pages in zip(doc.sheets, map_sheets_to_pages(doc.sheets, page_texts))
    ]
    return doc.model_copy(update={"sheets": sheets, "pdf_path": pdf_path})


def map_sheets_to_pages(sheets: list[SourceSheet], page_texts: list[str]) -> list[list[int]]:
    """
    1-based PDF pages for each sheet, matched on the compacted sheet title.
    A scan with no text layer at all maps sheet i to page i+1, but only when
    it has exactly one page per sheet; otherwise pages stay unknown and
    callers pass them explicitly.
    """
    if not any(page_texts):
        if page_texts and len(page_texts) == len(sheets):
            logger.info("pdf_pages_mapped_by_order", pages=len(page_texts))
            return [[i + 1] for i in range(len(sheets))]
        return [[] for _ in sheets]

    mapped = []
    for sheet in sheets:
        needle = _compact(sheet.title)[:24]
        mapped.append([i + 1 for i, text in enumerate(page_texts) if needle and needle in text])
    return mapped
