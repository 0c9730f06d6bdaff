"""
Tests for the selective OCR fallback.
"""

import os

import pytest

from app.config import settings
from app.engines.tesseract_engine import OcrError, TesseractEngine
from app.models.enums import OcrReason, TableStatus
from app.pipeline.ocr_fallback import load_mock_text, normalize_page_numbers, run_selective_ocr
from app.schemas.contracts import BudgetTableCandidate


class FakeEngine:
    """Stands in for TesseractEngine; pages listed in `failing` raise OcrError."""

    def __init__(self, texts=None, failing=(), binaries=True):
        self.texts = texts or {}
        self.failing = set(failing)
        self.binaries = binaries
        self.calls = []

    def binary_status(self):
        return {"pdftoppm": self.binaries, "tesseract": self.binaries}

    def binaries_available(self, status=None):
        return all((status or self.binary_status()).values())

    def ocr_page(self, pdf_path, page_no, output_dir):
        self.calls.append(page_no)
        # Leave the rendered page behind; the run must clean up after us
        with open(os.path.join(output_dir, f"page-{page_no}.png"), "wb") as f:
            f.write(b"png")
        if page_no in self.failing:
            raise OcrError("NON_ZERO_EXIT", f"page {page_no} failed")
        return self.texts.get(page_no, "")


class BrokenEngine(FakeEngine):
    """An engine bug rather than a page failure."""

    def ocr_page(self, pdf_path, page_no, output_dir):
        super().ocr_page(pdf_path, page_no, output_dir)
        raise RuntimeError("engine crashed")


class CorruptImageEngine(TesseractEngine):
    """Real recognition over a rendered page that is not an image."""

    def binary_status(self):
        return {"pdftoppm": True, "tesseract": True}

    def render_page(self, pdf_path, page_no, output_dir):
        path = os.path.join(output_dir, f"page-{page_no}.png")
        with open(path, "wb") as f:
            f.write(b"not an image")
        return path


def leftover_files():
    return os.listdir(settings.OCR_TMP_DIR)


def ready(key, pages):
    return BudgetTableCandidate(
        key=key,
        title=key,
        matched_sheet_or_page=key,
        status=TableStatus.READY,
        rows=[["x"]],
        page_numbers=pages,
    )


@pytest.fixture
def pdf_file(tmp_path):
    path = tmp_path / "unit.pdf"
    path.write_bytes(b"%PDF-1.4\n")
    return str(path)


@pytest.fixture(autouse=True)
def ocr_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "OCR_ENABLED", True)
    monkeypatch.setattr(settings, "OCR_MOCK_TEXT_JSON", None)
    monkeypatch.setattr(settings, "OCR_TMP_DIR", str(tmp_path / "ocr"))


class TestEarlyExits:
    """Test the reason precedence for skipped runs."""

    async def test_no_suspicious_tables(self, pdf_file):
        result = await run_selective_ocr(pdf_file, [], [], engine=FakeEngine())
        assert result.reason == OcrReason.NO_SUSPICIOUS_TABLES
        assert not result.executed

    async def test_disabled(self, monkeypatch, pdf_file):
        monkeypatch.setattr(settings, "OCR_ENABLED", False)
        result = await run_selective_ocr(pdf_file, [ready("three_public", [1])], ["three_public"], engine=FakeEngine())
        assert result.reason == OcrReason.OCR_DISABLED
        assert not result.enabled
        assert result.skipped_tables[0].reason == OcrReason.OCR_DISABLED

    async def test_pdf_not_found(self, tmp_path):
        result = await run_selective_ocr(
            str(tmp_path / "missing.pdf"), [ready("three_public", [1])], ["three_public"], engine=FakeEngine(),
        )
        assert result.reason == OcrReason.PDF_NOT_FOUND

    async def test_no_pdf_path(self):
        result = await run_selective_ocr(None, [ready("three_public", [1])], ["three_public"], engine=FakeEngine())
        assert result.reason == OcrReason.PDF_NOT_FOUND

    async def test_binary_missing(self, pdf_file):
        result = await run_selective_ocr(
            pdf_file, [ready("three_public", [1])], ["three_public"], engine=FakeEngine(binaries=False),
        )
        assert result.reason == OcrReason.OCR_BINARY_MISSING
        assert result.binary_status == {"pdftoppm": False, "tesseract": False}


class TestMockMode:
    """Test mock OCR text."""

    async def test_mock_takes_precedence_over_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "OCR_ENABLED", False)
        result = await run_selective_ocr(
            None, [], ["budget_summary", "three_public"], mock_text={"budget_summary": "收入总计 100"},
        )
        assert result.reason == OcrReason.MOCK_OCR
        assert result.mock_mode
        assert result.processed_tables == ["budget_summary"]
        assert result.table_text_by_key == {"budget_summary": "收入总计 100"}
        assert [s.table_key for s in result.skipped_tables] == ["three_public"]
        assert result.skipped_tables[0].reason == OcrReason.MOCK_TEXT_NOT_PROVIDED

    async def test_mock_no_match(self):
        result = await run_selective_ocr(None, [], ["three_public"], mock_text={"budget_summary": "x"})
        assert result.reason == OcrReason.MOCK_NO_MATCH
        assert not result.executed

    async def test_mock_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "OCR_MOCK_TEXT_JSON", '{"three_public": "机关运行经费 20"}')
        result = await run_selective_ocr(None, [], ["three_public"])
        assert result.reason == OcrReason.MOCK_OCR

    def test_invalid_mock_json(self, monkeypatch):
        monkeypatch.setattr(settings, "OCR_MOCK_TEXT_JSON", "{not json")
        assert load_mock_text() is None

    def test_blank_mock_values_dropped(self):
        assert load_mock_text({"a": "  ", "b": "x"}) == {"b": "x"}


class TestTableLoop:
    """Test per-table OCR with a fake engine."""

    async def test_applied(self, pdf_file):
        engine = FakeEngine(texts={3: "收入总计 100", 4: "支出总计 100"})
        result = await run_selective_ocr(pdf_file, [ready("budget_summary", [4, 3])], ["budget_summary"], engine=engine)
        assert result.reason == OcrReason.OCR_APPLIED
        assert result.executed
        assert result.table_text_by_key["budget_summary"] == "收入总计 100\n支出总计 100"
        assert sorted(engine.calls) == [3, 4]
        assert leftover_files() == []

    async def test_one_failed_page_does_not_sink_the_run(self, pdf_file):
        engine = FakeEngine(texts={2: "收入总计 100", 5: "机关运行经费 20"}, failing={1})
        tables = [ready("budget_summary", [1, 2]), ready("three_public", [5])]
        result = await run_selective_ocr(pdf_file, tables, ["budget_summary", "three_public"], engine=engine)
        assert result.reason == OcrReason.OCR_APPLIED
        assert result.processed_tables == ["budget_summary", "three_public"]
        [failed] = [s for s in result.skipped_tables if s.reason == OcrReason.OCR_PAGE_FAILED]
        assert failed.table_key == "budget_summary"
        assert failed.page_no == 1
        assert failed.error_code == "NON_ZERO_EXIT"
        assert leftover_files() == []

    async def test_unreadable_page_image_is_a_page_failure(self, pdf_file):
        result = await run_selective_ocr(
            pdf_file, [ready("three_public", [2])], ["three_public"], engine=CorruptImageEngine(),
        )
        assert result.reason == OcrReason.OCR_NO_OUTPUT
        [failed, empty] = result.skipped_tables
        assert failed.reason == OcrReason.OCR_PAGE_FAILED
        assert failed.page_no == 2
        assert failed.error_code == "NON_ZERO_EXIT"
        assert empty.reason == OcrReason.EMPTY_OCR_TEXT
        assert leftover_files() == []

    async def test_engine_crash_still_cleans_up(self, pdf_file):
        with pytest.raises(RuntimeError):
            await run_selective_ocr(
                pdf_file, [ready("three_public", [1, 2])], ["three_public"], engine=BrokenEngine(),
            )
        assert leftover_files() == []

    async def test_table_not_found_and_no_pages(self, pdf_file):
        tables = [ready("three_public", [])]
        result = await run_selective_ocr(pdf_file, tables, ["budget_summary", "three_public"], engine=FakeEngine())
        assert result.reason == OcrReason.OCR_NO_OUTPUT
        reasons = {s.table_key: s.reason for s in result.skipped_tables}
        assert reasons == {
            "budget_summary": OcrReason.TABLE_NOT_FOUND,
            "three_public": OcrReason.NO_PAGE_NUMBERS,
        }

    async def test_empty_text(self, pdf_file):
        result = await run_selective_ocr(pdf_file, [ready("three_public", [1])], ["three_public"], engine=FakeEngine())
        assert result.reason == OcrReason.OCR_NO_OUTPUT
        assert result.skipped_tables[0].reason == OcrReason.EMPTY_OCR_TEXT


class TestPageNumbers:
    def test_normalize(self):
        assert normalize_page_numbers([3, "2", 2.0, 0, -1, 1.5, "x", None, True]) == [2, 3]
