"""
Tests for the Tesseract engine's error mapping.
"""

import pytesseract
import pytest
from PIL import Image

from app.engines.tesseract_engine import OcrError, TesseractEngine


@pytest.fixture
def page_image(tmp_path):
    path = tmp_path / "page-1.png"
    Image.new("L", (20, 20), color=255).save(path)
    return str(path)


class TestRecognizeImage:
    """Every recognition failure surfaces as OcrError."""

    def test_not_an_image(self, tmp_path):
        path = tmp_path / "page-1.png"
        path.write_bytes(b"not an image")
        with pytest.raises(OcrError) as exc:
            TesseractEngine().recognize_image(str(path))
        assert exc.value.error_code == "NON_ZERO_EXIT"

    def test_missing_file(self, tmp_path):
        with pytest.raises(OcrError) as exc:
            TesseractEngine().recognize_image(str(tmp_path / "gone.png"))
        assert exc.value.error_code == "NON_ZERO_EXIT"

    def test_timeout(self, monkeypatch, page_image):
        def slow(*args, **kwargs):
            raise RuntimeError("Tesseract process timeout")

        monkeypatch.setattr(pytesseract, "image_to_string", slow)
        with pytest.raises(OcrError) as exc:
            TesseractEngine(timeout=3).recognize_image(page_image)
        assert exc.value.error_code == "TIMEOUT"

    def test_other_runtime_error(self, monkeypatch, page_image):
        def crash(*args, **kwargs):
            raise RuntimeError("unexpected end of stream")

        monkeypatch.setattr(pytesseract, "image_to_string", crash)
        with pytest.raises(OcrError) as exc:
            TesseractEngine().recognize_image(page_image)
        assert exc.value.error_code == "NON_ZERO_EXIT"

    def test_binary_missing(self, monkeypatch, page_image):
        def missing(*args, **kwargs):
            raise pytesseract.TesseractNotFoundError()

        monkeypatch.setattr(pytesseract, "image_to_string", missing)
        with pytest.raises(OcrError) as exc:
            TesseractEngine().recognize_image(page_image)
        assert exc.value.error_code == "BINARY_MISSING"
