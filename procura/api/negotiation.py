"""
Negotiation copilot API routes.
"""
from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procura.api.deps import get_copilot
from procura.core.rbac import require_operator, require_viewer
from procura.db.models import MessageRole, NegotiationStatus
from procura.db.session import get_db
from procura.services.negotiation_copilot import NegotiationCopilot

router = APIRouter(prefix="/api/ai/negotiation", tags=["Negotiation Copilot"])


# ============= SCHEMAS =============

class SessionCreate(BaseModel):
    vendor_id: int
    current_price: float = Field(..., gt=0)
    target_price: Optional[float] = Field(None, ge=0)
    quote_id: Optional[int] = None
    rfq_id: Optional[int] = None


class MessageCreate(BaseModel):
    role: MessageRole
    content: str = Field(..., min_length=1)
    is_edited: bool = False
    original_content: Optional[str] = None


class StatusUpdate(BaseModel):
    status: NegotiationStatus
    final_price: Optional[float] = Field(None, ge=0)


class SuggestionRequest(BaseModel):
    context: Optional[str] = None


class MessageResponse(BaseModel):
    id: int
    session_id: int
    role: MessageRole
    content: str
    is_ai_generated: bool
    is_edited: bool
    original_content: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    id: int
    vendor_id: int
    quote_id: Optional[int]
    rfq_id: Optional[int]
    current_price: float
    target_price: Optional[float]
    ai_suggested_price: Optional[float]
    status: NegotiationStatus
    created_at: datetime
    updated_at: Optional[datetime]
    closed_at: Optional[datetime]

    class Config:
        from_attributes = True


class SessionSummary(SessionResponse):
    message_count: int


class SessionDetail(SessionResponse):
    messages: List[MessageResponse] = []


class SuggestionResponse(BaseModel):
    suggested_message: str
    suggested_price: Optional[float]
    strategy: str
    confidence: float
    source: str

    class Config:
        from_attributes = True


# ============= ENDPOINTS =============

@router.post("/sessions", response_model=SessionResponse)
def start_session(
    request: SessionCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    copilot: NegotiationCopilot = Depends(get_copilot),
):
    return copilot.start_session(
        db, user_context["company_id"], user_context["user_id"],
        vendor_id=request.vendor_id,
        current_price=request.current_price,
        target_price=request.target_price,
        quote_id=request.quote_id,
        rfq_id=request.rfq_id,
    )


@router.get("/sessions", response_model=List[SessionSummary])
def list_sessions(
    vendor_id: Optional[int] = Query(None),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
    copilot: NegotiationCopilot = Depends(get_copilot),
):
    results = []
    for session, count in copilot.list_sessions(db, user_context["company_id"], vendor_id=vendor_id):
        summary = SessionResponse.model_validate(session).model_dump()
        results.append(SessionSummary(**summary, message_count=count))
    return results


@router.get("/sessions/{session_id}", response_model=SessionDetail)
def get_session(
    session_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
    copilot: NegotiationCopilot = Depends(get_copilot),
):
    return copilot.get_session(db, user_context["company_id"], session_id)


@router.post("/sessions/{session_id}/messages", response_model=MessageResponse)
def add_message(
    session_id: int,
    request: MessageCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    copilot: NegotiationCopilot = Depends(get_copilot),
):
    """Record a buyer or vendor message. AI suggestions are only written by the copilot."""
    return copilot.add_message(
        db, user_context["company_id"], user_context["user_id"], session_id,
        role=request.role,
        content=request.content,
        is_edited=request.is_edited,
        original_content=request.original_content,
    )


@router.post("/sessions/{session_id}/suggestion", response_model=SuggestionResponse)
def suggest(
    session_id: int,
    request: Optional[SuggestionRequest] = None,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    copilot: NegotiationCopilot = Depends(get_copilot),
):
    """
    Suggest the buyer's next message and counter-offer.

    Falls back to template suggestions when the AI provider is not
    configured or fails.
    """
    return copilot.get_suggestion(
        db, user_context["company_id"], user_context["user_id"], session_id,
        context=request.context if request else None,
    )


@router.post("/sessions/{session_id}/status", response_model=SessionResponse)
def update_status(
    session_id: int,
    request: StatusUpdate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    copilot: NegotiationCopilot = Depends(get_copilot),
):
    return copilot.update_session_status(
        db, user_context["company_id"], user_context["user_id"], session_id,
        request.status, final_price=request.final_price,
    )
