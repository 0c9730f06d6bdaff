"""
Tesseract OCR engine.
Rasterizes single PDF pages with pdf2image (poppler's pdftoppm) and reads
them back with pytesseract. Used only for pages whose text layer defeated
table extraction.
"""

import os
import shutil
from typing import Optional

import pytesseract
import structlog
from pdf2image import convert_from_path
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)
from PIL import Image, UnidentifiedImageError

from app.config import settings
from app.engines.base import EngineError

logger = structlog.get_logger(__name__)


class OcrError(EngineError):
    """
    Raised when a page cannot be rasterized or recognized.
    error_code is one of BINARY_MISSING, TIMEOUT, NON_ZERO_EXIT.
    """

    def __init__(self, error_code: str, message: str):
        super().__init__("tesseract", error_code, message)


class TesseractEngine:
    """
    Page-level OCR over a PDF.

    Both steps are blocking subprocess calls; callers run them in worker
    threads (asyncio.to_thread).
    """

    engine_name = "tesseract"

    def __init__(
        self,
        lang: Optional[str] = None,
        psm: Optional[int] = None,
        dpi: Optional[int] = None,
        timeout: Optional[int] = None,
    ):
        """
        Args:
            lang: Tesseract language code (chi_sim+eng for budget documents)
            psm: Page segmentation mode (6 = uniform block of text)
        """
        self.lang = lang or settings.OCR_LANG
        self.psm = psm or settings.OCR_PSM
        self.dpi = dpi or settings.OCR_DPI
        self.timeout = timeout or settings.OCR_TIMEOUT_SECONDS
        pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    def binary_status(self) -> dict:
        """Which external binaries are on PATH (or POPPLER_PATH)."""
        # path=None falls back to $PATH
        return {
            "pdftoppm": shutil.which("pdftoppm", path=settings.POPPLER_PATH) is not None,
            "tesseract": shutil.which(settings.TESSERACT_CMD) is not None,
        }

    def binaries_available(self, status: Optional[dict] = None) -> bool:
        status = status or self.binary_status()
        return all(status.values())

    def render_page(self, pdf_path: str, page_no: int, output_dir: str) -> str:
        """Render one 1-based page to a PNG under output_dir; returns the file path."""
        try:
            paths = convert_from_path(
                pdf_path,
                dpi=self.dpi,
                first_page=page_no,
                last_page=page_no,
                fmt="png",
                output_folder=output_dir,
                paths_only=True,
                timeout=self.timeout,
                poppler_path=settings.POPPLER_PATH,
            )
        except PDFInfoNotInstalledError as e:
            raise OcrError("BINARY_MISSING", f"poppler not installed: {e}") from e
        except PDFPopplerTimeoutError as e:
            raise OcrError("TIMEOUT", f"pdftoppm timed out on page {page_no}") from e
        except (PDFPageCountError, PDFSyntaxError) as e:
            raise OcrError("NON_ZERO_EXIT", f"pdftoppm failed on page {page_no}: {e}") from e

        if not paths:
            raise OcrError("NON_ZERO_EXIT", f"pdftoppm produced no image for page {page_no}")
        return str(paths[0])

    def recognize_image(self, image_path: str) -> str:
        try:
            with Image.open(image_path) as img:
                text = pytesseract.image_to_string(
                    img,
                    lang=self.lang,
                    config=f"--psm {self.psm}",
                    timeout=self.timeout,
                )
        except pytesseract.TesseractNotFoundError as e:
            raise OcrError("BINARY_MISSING", str(e)) from e
        except pytesseract.TesseractError as e:
            raise OcrError("NON_ZERO_EXIT", f"tesseract exited {e.status}: {e.message}") from e
        except UnidentifiedImageError as e:
            raise OcrError("NON_ZERO_EXIT", f"unreadable page image {os.path.basename(image_path)}") from e
        except OSError as e:
            raise OcrError("NON_ZERO_EXIT", f"cannot read page image: {e}") from e
        except RuntimeError as e:
            # pytesseract signals its own kill-on-timeout as a bare RuntimeError
            if "timeout" in str(e).lower():
                raise OcrError("TIMEOUT", f"tesseract timed out after {self.timeout}s") from e
            raise OcrError("NON_ZERO_EXIT", f"tesseract failed: {e}") from e
        return text

    def ocr_page(self, pdf_path: str, page_no: int, output_dir: str) -> str:
        """Render then recognize one page. The page image is always removed."""
        image_path = None
        try:
            image_path = self.render_page(pdf_path, page_no, output_dir)
            text = self.recognize_image(image_path)
        finally:
            if image_path and os.path.exists(image_path):
                os.remove(image_path)

        logger.debug("tesseract_page_complete", page_no=page_no, text_chars=len(text))
        return text
