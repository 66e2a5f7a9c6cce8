"""
Local OCR engine (no network dependency).

Images go through Tesseract via pytesseract. PDFs use their embedded text
layer (PyPDF2); a scanned PDF without one yields empty text and zero
confidence, which sends the document to the vision path when available.
"""
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import PyPDF2
import pytesseract
from PIL import Image

from procura.core.config import settings
from procura.core.logging import get_logger

logger = get_logger(__name__)


_MIME_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}


def get_mime_type(file_name: str) -> str:
    """MIME type from the file extension; unknown extensions map to octet-stream."""
    ext = (file_name or "").lower().rsplit(".", 1)[-1] if "." in (file_name or "") else ""
    return _MIME_TYPES.get(ext, "application/octet-stream")


@dataclass
class OCRResult:
    text: str
    confidence: float  # 0-100, Tesseract's scale
    engine: str = "tesseract"


class OCREngine(ABC):
    """recognize() is synchronous and always available."""

    @abstractmethod
    def recognize(self, content: bytes, mime_type: str = "image/png") -> OCRResult:
        pass


class TesseractOCREngine(OCREngine):
    def __init__(self, language: str = "eng", tesseract_cmd: Optional[str] = None):
        self.language = language
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def recognize(self, content: bytes, mime_type: str = "image/png") -> OCRResult:
        if mime_type == "application/pdf":
            return self._pdf_text_layer(content)

        with Image.open(io.BytesIO(content)) as im:
            data = pytesseract.image_to_data(
                im, lang=self.language, output_type=pytesseract.Output.DICT
            )
            text = pytesseract.image_to_string(im, lang=self.language)

        # Word-level confidences; -1 marks layout rows without text
        confidences = [
            float(conf)
            for conf, word in zip(data.get("conf", []), data.get("text", []))
            if float(conf) >= 0 and str(word).strip()
        ]
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        logger.debug(f"Tesseract recognized {len(confidences)} words (mean confidence {confidence:.1f})")
        return OCRResult(text=text.strip(), confidence=confidence)

    def _pdf_text_layer(self, content: bytes) -> OCRResult:
        reader = PyPDF2.PdfReader(io.BytesIO(content))
        text = ""
        for page in reader.pages:
            page_text = page.extract_text()
            if page_text:
                text += page_text + "\n"
        text = text.strip()
        if not text:
            logger.info("PDF has no text layer; treating as a zero-confidence scan")
            return OCRResult(text="", confidence=0.0, engine="pdf-text")
        return OCRResult(text=text, confidence=100.0, engine="pdf-text")


def build_ocr_engine() -> OCREngine:
    return TesseractOCREngine(language=settings.OCR_LANGUAGE, tesseract_cmd=settings.TESSERACT_CMD)
