"""
Tests for the quote document extraction pipeline.

Tests:
1. Rule-based extraction when no model is configured
2. Vision fallback for low-confidence scans
3. Degradation from vision to text model to pattern rules
4. Failure handling and the approval state machine
"""
import json

import pytest

from procura.core.errors import ExtractionFailed, InvalidStateTransition, NotFound
from procura.db.models import AIFeature, AIUsageLog, AuditLog, ExtractionMethod, ExtractionStatus
from procura.services.document_extraction import (
    approve_extraction,
    extract_amounts,
    extract_quote_document,
    get_extraction,
    list_extractions,
    normalize_quote_data,
    rule_based_parse,
)

QUOTE_TEXT = """SIGMA CHEMICALS PVT LTD
GSTIN: 27AAPFU0939F1ZV
Quotation No: QT-2024-118
Date: 12/03/2024
Subtotal: Rs. 1,00,000.00
GST @18%: Rs. 18,000.00
Grand Total: Rs. 1,18,000.00
"""

VISION_PAYLOAD = {
    "vendor_name": "Sigma Chemicals Pvt Ltd",
    "vendor_gstin": "27AAPFU0939F1ZV",
    "quote_number": "QT-2024-118",
    "items": [
        {"item_name": "Paracetamol IP", "quantity": 100, "unit": "kg", "unit_price": 1000.0, "total": 118000.0},
    ],
    "subtotal": 100000.0,
    "total_gst": 18000.0,
    "grand_total": 118000.0,
    "overall_confidence": 0.92,
}


def run_extraction(db, ai, ocr, company, **kwargs):
    return extract_quote_document(
        db, ai, ocr,
        company_id=company.id,
        user_id=7,
        content=b"fake-image-bytes",
        file_name=kwargs.pop("file_name", "quote.png"),
        **kwargs,
    )


class TestRuleBasedParsing:
    def test_amounts_are_distinct_and_descending(self):
        assert extract_amounts(QUOTE_TEXT) == [118000.0, 100000.0, 18000.0]

    def test_amount_formats(self):
        text = "INR 2,500 then 1,25,000.50 and 99.95 but not 2024 or 18%"
        assert extract_amounts(text) == [125000.5, 2500.0, 99.95]

    def test_fields(self):
        data = rule_based_parse(QUOTE_TEXT, 0.9)
        assert data["vendor_gstin"] == "27AAPFU0939F1ZV"
        assert data["quote_number"] == "QT-2024-118"
        assert data["quote_date"] == "12/03/2024"
        assert data["grand_total"] == 118000.0
        assert data["items"] == []
        assert data["overall_confidence"] == pytest.approx(0.45)

    def test_empty_text(self):
        data = rule_based_parse("", 0.0)
        assert data["grand_total"] is None
        assert data["quote_number"] is None
        assert data["overall_confidence"] == 0.0

    def test_normalize_clamps_confidence_and_drops_bad_items(self):
        data = normalize_quote_data({"items": [{"item_name": "A"}, "junk"], "overall_confidence": 3}, 0.5)
        assert data["items"] == [{"item_name": "A"}]
        assert data["overall_confidence"] == 1.0
        assert data["vendor_name"] is None


class TestExtractionPipeline:
    def test_rule_based_without_provider(self, db_session, company, null_ai, make_ocr):
        extraction = run_extraction(db_session, null_ai, make_ocr(QUOTE_TEXT, 90.0), company)

        assert extraction.status == ExtractionStatus.EXTRACTED
        assert extraction.extraction_method == ExtractionMethod.LOCAL_OCR
        assert extraction.model_used == "tesseract"
        assert extraction.confidence == pytest.approx(0.45)
        assert extraction.structured_data["grand_total"] == 118000.0
        assert extraction.structured_data["extraction_method"] == "local-ocr"
        assert extraction.raw_text == QUOTE_TEXT

    def test_low_confidence_uses_vision(self, db_session, company, make_ai, make_ocr):
        ai = make_ai(image_responses=[f"```json\n{json.dumps(VISION_PAYLOAD)}\n```"])
        extraction = run_extraction(db_session, ai, make_ocr("blurry", 40.0), company)

        assert extraction.extraction_method == ExtractionMethod.VISION_FALLBACK
        assert extraction.model_used == "gpt-4o"
        assert extraction.confidence == pytest.approx(0.92)
        assert extraction.structured_data["items"][0]["item_name"] == "Paracetamol IP"
        assert ai.text_prompts == []

    def test_high_confidence_skips_vision(self, db_session, company, make_ai, make_ocr):
        ai = make_ai(text_responses=[json.dumps(VISION_PAYLOAD)])
        extraction = run_extraction(db_session, ai, make_ocr(QUOTE_TEXT, 95.0), company)

        assert ai.image_prompts == []
        assert extraction.extraction_method == ExtractionMethod.LOCAL_OCR
        assert extraction.model_used == "gpt-4o-mini"
        assert "OCR TEXT" in ai.text_prompts[0]

    def test_vision_failure_falls_back_to_text_model(self, db_session, company, make_ai, make_ocr):
        ai = make_ai(image_responses=["I cannot read this"], text_responses=[json.dumps(VISION_PAYLOAD)])
        extraction = run_extraction(db_session, ai, make_ocr(QUOTE_TEXT, 50.0), company)

        assert extraction.status == ExtractionStatus.EXTRACTED
        assert extraction.extraction_method == ExtractionMethod.LOCAL_OCR
        assert extraction.model_used == "gpt-4o-mini"

    def test_all_models_fail_uses_rules(self, db_session, company, make_ai, make_ocr):
        ai = make_ai()  # every call raises ProviderError
        extraction = run_extraction(db_session, ai, make_ocr(QUOTE_TEXT, 50.0), company)

        assert extraction.status == ExtractionStatus.EXTRACTED
        assert extraction.model_used == "tesseract"
        assert extraction.confidence == pytest.approx(0.25)

    def test_threshold_override(self, db_session, company, make_ai, make_ocr):
        ai = make_ai(text_responses=[json.dumps(VISION_PAYLOAD)])
        run_extraction(db_session, ai, make_ocr(QUOTE_TEXT, 50.0), company, confidence_threshold=0.4)
        assert ai.image_prompts == []

    def test_usage_and_audit_recorded(self, db_session, company, null_ai, make_ocr):
        extraction = run_extraction(db_session, null_ai, make_ocr(QUOTE_TEXT, 90.0), company)

        usage = db_session.query(AIUsageLog).one()
        assert usage.feature == AIFeature.OCR_EXTRACTION
        assert usage.success is True
        assert usage.estimated_cost == 0.0
        audit = db_session.query(AuditLog).filter(AuditLog.action == "OCR_EXTRACTION_COMPLETED").one()
        assert audit.entity_id == extraction.id

    def test_ocr_failure_marks_failed(self, db_session, company, null_ai, make_ocr):
        ocr = make_ocr(error=RuntimeError("tesseract is not installed"))
        with pytest.raises(ExtractionFailed) as exc_info:
            run_extraction(db_session, null_ai, ocr, company)

        extraction = get_extraction(db_session, company.id, exc_info.value.extraction_id)
        assert extraction.status == ExtractionStatus.FAILED
        assert "tesseract is not installed" in extraction.error
        usage = db_session.query(AIUsageLog).one()
        assert usage.success is False

    def test_empty_upload(self, db_session, company, null_ai, make_ocr):
        with pytest.raises(ValueError):
            extract_quote_document(db_session, null_ai, make_ocr(), company.id, 1, b"", "quote.png")


class TestApproval:
    @pytest.fixture
    def extraction(self, db_session, company, null_ai, make_ocr):
        return run_extraction(db_session, null_ai, make_ocr(QUOTE_TEXT, 90.0), company)

    def test_approve_with_corrections(self, db_session, company, extraction):
        corrected = dict(extraction.structured_data, vendor_name="Sigma Chemicals")
        approved = approve_extraction(db_session, company.id, 9, extraction.id, corrected)

        assert approved.status == ExtractionStatus.APPROVED
        assert approved.structured_data["vendor_name"] == "Sigma Chemicals"
        assert approved.approved_by == 9
        assert approved.approved_at is not None

    def test_reapproving_same_data_is_noop(self, db_session, company, extraction):
        corrected = dict(extraction.structured_data, vendor_name="Sigma Chemicals")
        first = approve_extraction(db_session, company.id, 9, extraction.id, corrected)
        approved_at = first.approved_at

        second = approve_extraction(db_session, company.id, 10, extraction.id, dict(corrected))
        assert second.approved_by == 9
        assert second.approved_at == approved_at

    def test_changing_approved_data_is_rejected(self, db_session, company, extraction):
        approve_extraction(db_session, company.id, 9, extraction.id, {"grand_total": 1})
        with pytest.raises(InvalidStateTransition):
            approve_extraction(db_session, company.id, 9, extraction.id, {"grand_total": 2})

    def test_failed_extraction_cannot_be_approved(self, db_session, company, null_ai, make_ocr):
        with pytest.raises(ExtractionFailed) as exc_info:
            run_extraction(db_session, null_ai, make_ocr(error=RuntimeError("bad image")), company)
        with pytest.raises(InvalidStateTransition):
            approve_extraction(db_session, company.id, 9, exc_info.value.extraction_id, {})


class TestQueries:
    def test_other_company_cannot_read(self, db_session, factory, company, null_ai, make_ocr):
        extraction = run_extraction(db_session, null_ai, make_ocr(QUOTE_TEXT, 90.0), company)
        other = factory.company("Other Co")
        with pytest.raises(NotFound):
            get_extraction(db_session, other.id, extraction.id)

    def test_list_filters(self, db_session, factory, company, null_ai, make_ocr):
        rfq = factory.rfq(company)
        run_extraction(db_session, null_ai, make_ocr(QUOTE_TEXT, 90.0), company, rfq_id=rfq.id)
        run_extraction(db_session, null_ai, make_ocr(QUOTE_TEXT, 90.0), company)

        assert len(list_extractions(db_session, company.id)) == 2
        assert len(list_extractions(db_session, company.id, rfq_id=rfq.id)) == 1
        assert list_extractions(db_session, company.id, status=ExtractionStatus.APPROVED) == []
