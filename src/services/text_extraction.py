"""OCR text extraction through tesseract (pytesseract over a Pillow image)."""

from __future__ import annotations

import asyncio
import logging

import pytesseract
from PIL import Image

from src.errors import ExtractionFailure

LOG = logging.getLogger(__name__)


class TesseractTextExtractor:
    """Runs ``pytesseract.image_to_string`` in a worker thread and returns its text."""

    def __init__(
        self,
        *,
        command: str = "tesseract",
        lang: str = "ind+eng",
        oem: int = 1,
        psm: int = 3,
        timeout_seconds: float | None = 300.0,
    ) -> None:
        self.command = command
        self.lang = lang
        self.oem = oem
        self.psm = psm
        self.timeout_seconds = timeout_seconds

    @property
    def config(self) -> str:
        return f"--oem {self.oem} --psm {self.psm}"

    def _read(self, local_path: str) -> str:
        pytesseract.pytesseract.tesseract_cmd = self.command
        with Image.open(local_path) as image:
            return pytesseract.image_to_string(
                image,
                lang=self.lang,
                config=self.config,
                timeout=self.timeout_seconds or 0,
            )

    async def extract_text(self, local_path: str) -> str:
        try:
            return await asyncio.to_thread(self._read, local_path)
        except pytesseract.TesseractNotFoundError as exc:
            raise ExtractionFailure(f"OCR engine not available: {self.command}") from exc
        except pytesseract.TesseractError as exc:
            LOG.warning("ocr_engine_failed", extra={"returncode": exc.status, "error": str(exc.message)[:500]})
            raise ExtractionFailure(f"Failed to perform OCR: {exc.message or exc.status}") from exc
        except RuntimeError as exc:
            # pytesseract signals its timeout as a bare RuntimeError
            raise ExtractionFailure(f"OCR timed out after {self.timeout_seconds}s: {exc}") from exc
        except OSError as exc:
            raise ExtractionFailure(f"Unreadable image {local_path}: {exc}") from exc


__all__ = ["TesseractTextExtractor"]
