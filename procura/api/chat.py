"""
Procurement assistant chat routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procura.api.deps import get_chatbot
from procura.core.rbac import require_viewer
from procura.db.session import get_db
from procura.services.chatbot import ProcurementChatbot, get_quick_stats

router = APIRouter(prefix="/api/ai/chat", tags=["Assistant Chat"])


# ============= SCHEMAS =============

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class ChatResponse(BaseModel):
    session_id: str
    response: str
    suggestions: List[str]
    source: str


class ChatMessage(BaseModel):
    role: str
    content: str


class ClearResponse(BaseModel):
    success: bool


class QuickStats(BaseModel):
    pending_rfqs: int
    pending_quotes: int
    active_pos: int
    recent_anomalies: int
    message: str


# ============= ENDPOINTS =============

@router.post("", response_model=ChatResponse)
def chat(
    request: ChatRequest,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
    chatbot: ProcurementChatbot = Depends(get_chatbot),
):
    """
    Answer a question about the user's procurement data.

    Omit session_id to start a conversation; an expired id also starts a
    new one, so clients should keep the returned session_id.
    """
    return chatbot.chat(
        db, user_context["company_id"], user_context["user_id"], request.message,
        session_id=request.session_id,
    )


@router.get("/session/{session_id}", response_model=List[ChatMessage])
def get_history(
    session_id: str,
    user_context: dict = Depends(require_viewer),
    chatbot: ProcurementChatbot = Depends(get_chatbot),
):
    return chatbot.get_history(user_context["company_id"], user_context["user_id"], session_id)


@router.post("/session/{session_id}/clear", response_model=ClearResponse)
def clear_session(
    session_id: str,
    user_context: dict = Depends(require_viewer),
    chatbot: ProcurementChatbot = Depends(get_chatbot),
):
    return {"success": chatbot.clear_session(user_context["company_id"], user_context["user_id"], session_id)}


@router.get("/stats", response_model=QuickStats)
def quick_stats(
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_quick_stats(db, user_context["company_id"])
