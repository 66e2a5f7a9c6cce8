"""
Quote document extraction API routes.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from procura.api.deps import get_ai, get_ocr
from procura.core.config import settings
from procura.core.rbac import require_operator, require_viewer
from procura.db.models import ExtractionMethod, ExtractionStatus
from procura.db.session import get_db
from procura.services.ai_gateway import AICapability
from procura.services.document_extraction import (
    approve_extraction, extract_quote_document, get_extraction, list_extractions,
)
from procura.services.ocr_engine import OCREngine, get_mime_type

router = APIRouter(prefix="/api/ai/ocr", tags=["Document Extraction"])

ALLOWED_TYPES = {"application/pdf", "image/png", "image/jpeg", "image/webp", "image/gif", "image/tiff"}


# ============= SCHEMAS =============

class ExtractionResponse(BaseModel):
    id: int
    rfq_id: Optional[int]
    file_name: str
    file_type: Optional[str]
    status: ExtractionStatus
    structured_data: Optional[Dict[str, Any]]
    confidence: Optional[float]
    extraction_method: Optional[ExtractionMethod]
    model_used: Optional[str]
    processing_time_ms: Optional[int]
    error: Optional[str]
    approved_by: Optional[int]
    approved_at: Optional[datetime]
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class ExtractionDetailResponse(ExtractionResponse):
    raw_text: Optional[str]


class ApproveRequest(BaseModel):
    corrected_data: Dict[str, Any]


# ============= ENDPOINTS =============

@router.post("/extract", response_model=ExtractionDetailResponse)
def extract_document(
    file: UploadFile = File(...),
    rfq_id: Optional[int] = Form(None),
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    ai: AICapability = Depends(get_ai),
    ocr: OCREngine = Depends(get_ocr),
):
    """
    Upload a vendor quote (image or PDF) and extract structured data.

    Low-confidence scans are re-read by the vision model when one is
    configured. Without a model the result comes from pattern rules.
    """
    file_name = file.filename or "upload"
    if get_mime_type(file_name) not in ALLOWED_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"File type not allowed. Allowed: {', '.join(sorted(ALLOWED_TYPES))}",
        )

    content = file.file.read()
    if len(content) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large")

    return extract_quote_document(
        db, ai, ocr,
        company_id=user_context["company_id"],
        user_id=user_context["user_id"],
        content=content,
        file_name=file_name,
        rfq_id=rfq_id,
    )


@router.post("/{extraction_id}/approve", response_model=ExtractionResponse)
def approve(
    extraction_id: int,
    request: ApproveRequest,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    """Approve an extraction, replacing its data with the reviewed version."""
    return approve_extraction(
        db, user_context["company_id"], user_context["user_id"], extraction_id, request.corrected_data
    )


@router.get("", response_model=List[ExtractionResponse])
def list_all(
    rfq_id: Optional[int] = Query(None),
    status: Optional[ExtractionStatus] = Query(None),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return list_extractions(db, user_context["company_id"], rfq_id=rfq_id, status=status)


@router.get("/{extraction_id}", response_model=ExtractionDetailResponse)
def get_one(
    extraction_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_extraction(db, user_context["company_id"], extraction_id)
