"""
Vendor quote document extraction.

Pipeline per upload: PENDING -> PROCESSING -> EXTRACTED | FAILED, then a
manual EXTRACTED -> APPROVED with caller corrections.

1. Local OCR produces raw text and a confidence.
2. Low-confidence scans go to the vision model when one is available.
3. Otherwise the OCR text is structured by the text model, or by
   pattern rules when no model is available.
"""
import re
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from procura.core.config import settings
from procura.core.errors import AIProviderError, ExtractionFailed, InvalidStateTransition, NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import utcnow
from procura.db.models import AIFeature, ExtractionMethod, ExtractionStatus, QuoteExtraction
from procura.services.ai_gateway import AICapability, estimate_tokens, log_usage
from procura.services.audit import record_audit
from procura.services.ocr_engine import OCREngine, get_mime_type
from procura.services.structured_response import parse_structured_response

logger = get_logger(__name__)


RULE_BASED_CONFIDENCE_FACTOR = 0.5

QUOTE_FIELDS = (
    "vendor_name", "vendor_gstin", "quote_date", "quote_number", "valid_until",
    "subtotal", "total_gst", "total_freight", "grand_total",
    "payment_terms", "delivery_terms",
)

GSTIN_PATTERN = re.compile(r"\b\d{2}[A-Z]{5}\d{4}[A-Z]\d[Z][A-Z\d]\b")
DATE_PATTERN = re.compile(r"\b(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})\b")
QUOTE_NUMBER_PATTERN = re.compile(
    r"\b(?:quotation|quote|ref(?:erence)?)\s*(?:no\.?|number|#)?\s*[:#.\-]?\s*([A-Z0-9][A-Z0-9/\-]*)",
    re.IGNORECASE,
)
# Currency-marked numbers, comma-grouped numbers (Indian or western grouping)
# or numbers with two decimals
AMOUNT_PATTERN = re.compile(
    r"(?:₹|Rs\.?|RS\.?|INR)\s*(\d[\d,]*(?:\.\d+)?)"
    r"|(?<![\d.,])(\d{1,3}(?:,\d{2,3})+(?:\.\d+)?|\d+\.\d{2})(?!\.?\d)"
)

_SCHEMA_EXAMPLE = """{
  "vendor_name": "Vendor company name or null",
  "vendor_gstin": "GSTIN or null",
  "quote_date": "YYYY-MM-DD or null",
  "quote_number": "Quote / reference number or null",
  "valid_until": "YYYY-MM-DD or null",
  "items": [
    {
      "item_name": "Item description",
      "quantity": 100,
      "unit": "kg / pcs / ltrs",
      "unit_price": 150.00,
      "gst_rate": 18,
      "gst_amount": 2700.00,
      "freight": 500.00,
      "total": 18200.00,
      "confidence": 0.9
    }
  ],
  "subtotal": 15000.00,
  "total_gst": 2700.00,
  "total_freight": 500.00,
  "grand_total": 18200.00,
  "payment_terms": "Payment terms or null",
  "delivery_terms": "Delivery terms or null",
  "overall_confidence": %s
}"""

_VISION_PROMPT = (
    "Read this vendor quotation and extract its contents as JSON with exactly this shape:\n"
    + (_SCHEMA_EXAMPLE % "0.9")
    + "\n\nUse null for anything you cannot read. Monetary values must be numbers. "
    "Set each confidence between 0 and 1 according to how legible the value was. "
    "Return only the JSON object."
)

_TEXT_PROMPT = (
    "The text below was produced by OCR from a vendor quotation. Structure it as JSON "
    "with exactly this shape:\n%s\n\nOCR TEXT:\n%s\n\n"
    "Use null for fields the text does not contain. Monetary values must be numbers. "
    "Return only the JSON object."
)


def extract_quote_document(
    db: Session,
    ai: AICapability,
    ocr: OCREngine,
    company_id: int,
    user_id: Optional[int],
    content: bytes,
    file_name: str,
    rfq_id: Optional[int] = None,
    source_file_ref: Optional[str] = None,
    confidence_threshold: Optional[float] = None,
) -> QuoteExtraction:
    """
    Run the extraction pipeline for one uploaded document.

    Returns:
        The EXTRACTED QuoteExtraction record

    Raises:
        ValueError: empty upload
        ExtractionFailed: OCR or persistence failed; the record is left FAILED
    """
    if not content:
        raise ValueError("Uploaded document is empty")

    threshold = settings.OCR_CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
    mime_type = get_mime_type(file_name)

    extraction = QuoteExtraction(
        company_id=company_id,
        rfq_id=rfq_id,
        file_name=file_name,
        file_type=mime_type,
        source_file_ref=source_file_ref or file_name,
        status=ExtractionStatus.PENDING,
        created_by=user_id,
    )
    db.add(extraction)
    db.commit()
    db.refresh(extraction)

    extraction.status = ExtractionStatus.PROCESSING
    db.commit()

    started = time.monotonic()
    model_used = "tesseract"
    try:
        ocr_result = ocr.recognize(content, mime_type)
        ocr_confidence = max(0.0, min(1.0, ocr_result.confidence / 100.0))
        raw_text = ocr_result.text or ""
        model_used = ocr_result.engine

        data = None
        method = ExtractionMethod.LOCAL_OCR

        if ocr_confidence < threshold and ai.is_available():
            logger.info(
                f"OCR confidence {ocr_confidence:.2f} below {threshold:.2f} for {file_name}, using vision model"
            )
            data = _extract_with_vision(ai, content, mime_type)
            if data is not None:
                method = ExtractionMethod.VISION_FALLBACK
                model_used = ai.vision_model

        if data is None:
            data, structured_by = _structure_ocr_text(ai, raw_text, ocr_confidence)
            if structured_by:
                model_used = structured_by

        data["extraction_method"] = method.value
        latency_ms = int((time.monotonic() - started) * 1000)

        extraction.status = ExtractionStatus.EXTRACTED
        extraction.raw_text = raw_text
        extraction.structured_data = data
        extraction.confidence = data["overall_confidence"]
        extraction.extraction_method = method
        extraction.model_used = model_used
        extraction.processing_time_ms = latency_ms
        extraction.processed_at = utcnow()
        extraction.error = None
        db.commit()
    except Exception as e:
        db.rollback()
        latency_ms = int((time.monotonic() - started) * 1000)
        message = str(e) or type(e).__name__
        logger.error(f"Extraction {extraction.id} failed for {file_name}: {message}", exc_info=True)
        _mark_failed(db, extraction, message, latency_ms)
        log_usage(
            db, company_id, user_id, AIFeature.OCR_EXTRACTION, model_used,
            0, 0, latency_ms, False, error=message,
            metadata={"file_name": file_name, "rfq_id": rfq_id},
        )
        raise ExtractionFailed(extraction.id, "Failed to extract data from document") from e

    db.refresh(extraction)
    is_remote = model_used in (ai.text_model, ai.vision_model)
    log_usage(
        db, company_id, user_id, AIFeature.OCR_EXTRACTION, model_used,
        estimate_tokens(raw_text) + 1000 if is_remote else 0,
        500 if is_remote else 0,
        extraction.processing_time_ms or 0, True,
        metadata={"file_name": file_name, "rfq_id": rfq_id, "extraction_method": method.value},
    )
    record_audit(
        db, company_id, user_id, "OCR_EXTRACTION_COMPLETED", "QuoteExtraction", extraction.id,
        {
            "file_name": file_name,
            "items_extracted": len(data.get("items") or []),
            "confidence": data["overall_confidence"],
            "extraction_method": method.value,
        },
    )
    logger.info(
        f"Extraction {extraction.id} completed via {method.value} "
        f"(confidence {extraction.confidence:.2f}, {extraction.processing_time_ms}ms)"
    )
    return extraction


def _mark_failed(db: Session, extraction: QuoteExtraction, message: str, latency_ms: int) -> None:
    try:
        extraction.status = ExtractionStatus.FAILED
        extraction.error = message[:2000]
        extraction.processing_time_ms = latency_ms
        db.commit()
    except Exception as mark_err:
        logger.error(f"Could not mark extraction {extraction.id} as failed: {mark_err}")
        db.rollback()


def _extract_with_vision(ai: AICapability, content: bytes, mime_type: str) -> Optional[Dict[str, Any]]:
    """Vision path. Returns None when the model fails or returns unusable output."""
    try:
        raw = ai.analyze_image(content, _VISION_PROMPT, mime_type)
    except AIProviderError as e:
        logger.warning(f"Vision extraction failed, falling back to OCR text: {e}")
        return None

    parsed = parse_structured_response(raw)
    if not parsed.ok:
        logger.warning(f"Vision output unusable, falling back to OCR text: {parsed.error}")
        return None
    return normalize_quote_data(parsed.value, default_confidence=0.0)


def _structure_ocr_text(ai: AICapability, raw_text: str, ocr_confidence: float):
    """Text-model structuring with pattern rules as the fallback. Returns (data, model or None)."""
    if ai.is_available():
        prompt = _TEXT_PROMPT % (_SCHEMA_EXAMPLE % f"{ocr_confidence:.2f}", raw_text)
        try:
            parsed = parse_structured_response(ai.generate_text(prompt))
            if parsed.ok:
                return normalize_quote_data(parsed.value, default_confidence=ocr_confidence), ai.text_model
            logger.warning(f"Text model output unusable, using rule-based parsing: {parsed.error}")
        except AIProviderError as e:
            logger.warning(f"Text model structuring failed, using rule-based parsing: {e}")

    return rule_based_parse(raw_text, ocr_confidence), None


def rule_based_parse(raw_text: str, ocr_confidence: float) -> Dict[str, Any]:
    """
    Pattern extraction used when no model is available.

    Line items are not extracted. Amounts are ranked: the largest is taken as
    grand total, the next as GST and the next as subtotal.
    """
    text = raw_text or ""
    gstin = GSTIN_PATTERN.search(text)
    date = DATE_PATTERN.search(text)
    amounts = extract_amounts(text)

    data = {field: None for field in QUOTE_FIELDS}
    data.update({
        "vendor_gstin": gstin.group(0) if gstin else None,
        "quote_date": date.group(1) if date else None,
        "quote_number": _find_quote_number(text),
        "items": [],
        "grand_total": amounts[0] if len(amounts) > 0 else None,
        "total_gst": amounts[1] if len(amounts) > 1 else None,
        "subtotal": amounts[2] if len(amounts) > 2 else None,
        "overall_confidence": round(ocr_confidence * RULE_BASED_CONFIDENCE_FACTOR, 4),
    })
    return data


def extract_amounts(text: str) -> List[float]:
    """Distinct positive currency-like values, largest first."""
    values = set()
    for match in AMOUNT_PATTERN.finditer(text or ""):
        token = match.group(1) or match.group(2)
        try:
            value = float(token.replace(",", ""))
        except ValueError:
            continue
        if value > 0:
            values.add(value)
    return sorted(values, reverse=True)


def _find_quote_number(text: str) -> Optional[str]:
    for match in QUOTE_NUMBER_PATTERN.finditer(text):
        candidate = match.group(1).strip("-/")
        if any(ch.isdigit() for ch in candidate):
            return candidate
    return None


def normalize_quote_data(data: Dict[str, Any], default_confidence: float) -> Dict[str, Any]:
    """Fill missing keys and clamp confidence so every path stores the same shape."""
    normalized = {field: data.get(field) for field in QUOTE_FIELDS}
    items = data.get("items")
    normalized["items"] = [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []

    confidence = data.get("overall_confidence", default_confidence)
    try:
        confidence = float(confidence)
    except (TypeError, ValueError):
        confidence = default_confidence
    normalized["overall_confidence"] = max(0.0, min(1.0, confidence))
    return normalized


# ============= APPROVAL & QUERIES =============

def approve_extraction(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    extraction_id: int,
    corrected_data: Dict[str, Any],
) -> QuoteExtraction:
    """
    Overwrite structured data with caller corrections and mark APPROVED.

    Re-approving with identical data is a no-op. Any other change after
    approval, or approval from a status other than EXTRACTED, raises
    InvalidStateTransition.
    """
    extraction = get_extraction(db, company_id, extraction_id)

    if extraction.status == ExtractionStatus.APPROVED:
        if extraction.structured_data == corrected_data:
            return extraction
        raise InvalidStateTransition(
            "QuoteExtraction", extraction_id, extraction.status, ExtractionStatus.APPROVED
        )
    if extraction.status != ExtractionStatus.EXTRACTED:
        raise InvalidStateTransition(
            "QuoteExtraction", extraction_id, extraction.status, ExtractionStatus.APPROVED
        )

    extraction.structured_data = corrected_data
    extraction.status = ExtractionStatus.APPROVED
    extraction.approved_by = user_id
    extraction.approved_at = utcnow()
    db.commit()
    db.refresh(extraction)

    record_audit(
        db, company_id, user_id, "OCR_EXTRACTION_APPROVED", "QuoteExtraction", extraction_id,
        {
            "items_count": len(corrected_data.get("items") or []),
            "grand_total": corrected_data.get("grand_total"),
        },
    )
    return extraction


def get_extraction(db: Session, company_id: int, extraction_id: int) -> QuoteExtraction:
    extraction = db.query(QuoteExtraction).filter(
        QuoteExtraction.id == extraction_id,
        QuoteExtraction.company_id == company_id,
    ).first()
    if not extraction:
        raise NotFound("QuoteExtraction", extraction_id)
    return extraction


def list_extractions(
    db: Session,
    company_id: int,
    rfq_id: Optional[int] = None,
    status: Optional[ExtractionStatus] = None,
) -> List[QuoteExtraction]:
    query = db.query(QuoteExtraction).filter(QuoteExtraction.company_id == company_id)
    if rfq_id is not None:
        query = query.filter(QuoteExtraction.rfq_id == rfq_id)
    if status is not None:
        query = query.filter(QuoteExtraction.status == status)
    return query.order_by(QuoteExtraction.created_at.desc(), QuoteExtraction.id.desc()).all()
