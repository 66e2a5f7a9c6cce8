"""
Procurement assistant chatbot.

Chat sessions are held in a ConversationCache and belong to one user in one
company; an expired or foreign session id starts a fresh conversation. The
prompt carries a company summary and the last CHAT_HISTORY_WINDOW messages.
Without a usable AI provider the reply is built from quick stats and topic
hints instead.
"""
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from procura.core.config import settings
from procura.core.errors import AIProviderError, NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import utcnow
from procura.db.models import (
    AIFeature, Item, POStatus, PriceAnomaly, PurchaseOrder, Quote, QuoteStatus, RFQ, RFQStatus, Vendor,
)
from procura.services.ai_gateway import AICapability, estimate_tokens, log_usage
from procura.services.negotiation_copilot import format_inr
from procura.services.session_store import ConversationCache

logger = get_logger(__name__)


ACTIVE_PO_STATUSES = (POStatus.APPROVED, POStatus.SENT)
ANOMALY_LOOKBACK_DAYS = 7
MAX_SUGGESTIONS = 3
CONTEXT_UNAVAILABLE = "User context not available."

SYSTEM_PROMPT = """You are the Procura assistant inside a procurement management system.
You help buyers with:
- Reading their procurement data (RFQs, quotes, purchase orders, vendors)
- Using the system's features
- Procurement best practice
- Vendor selection and price negotiation
- The AI features: quote OCR, price anomaly detection, price forecasting, vendor scoring

Keep answers short and professional and use bullet points for lists.
If a question needs data you were not given, say so and point the user to the
part of the app that holds it."""

_SUGGESTION_RULES = [
    (re.compile(r"rfq|quote"), ["How do I create a new RFQ?", "Show me best practices for RFQ management"]),
    (re.compile(r"vendor"), ["How does vendor scoring work?", "How can I compare vendors?"]),
    (re.compile(r"price|cost"), ["How does price anomaly detection work?", "Can you explain price forecasting?"]),
    (re.compile(r"\bpos?\b|purchase order"), ["How do I track deliveries?", "What are the PO approval workflows?"]),
]
_DEFAULT_SUGGESTIONS = [
    "What AI features are available?",
    "How do I get started with procurement?",
    "Show me my recent activity",
]

_TOPIC_HINTS = [
    (("rfq", "quote"), "Open RFQs and their quotes are listed on the RFQ page, where quotes can be compared side by side."),
    (("vendor",), "Vendor scores and tiers are on the Vendor Intelligence page; recommendations rank vendors per item."),
    (("price", "cost", "forecast"), "Price anomalies are flagged on each quote and forecasts are on the Pricing page."),
    (("negotiat",), "The negotiation copilot suggests counter-offers from a vendor's quote."),
]


@dataclass
class ChatSession:
    session_id: str
    user_id: Optional[int]
    company_id: int
    transcript: List[Tuple[str, str]] = field(default_factory=list)  # ("user" | "assistant", content)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


def suggest_follow_ups(message: str) -> List[str]:
    """Follow-up questions keyed on the topics the user asked about."""
    text = message.lower()
    suggestions = []
    for pattern, questions in _SUGGESTION_RULES:
        if pattern.search(text):
            suggestions.extend(questions)
    return (suggestions or _DEFAULT_SUGGESTIONS)[:MAX_SUGGESTIONS]


def summarize_stats(pending_rfqs: int, pending_quotes: int, active_pos: int, anomalies: int) -> str:
    parts = []
    if pending_rfqs > 0:
        parts.append(f"{pending_rfqs} pending RFQ{'s' if pending_rfqs > 1 else ''}")
    if pending_quotes > 0:
        parts.append(f"{pending_quotes} quote{'s' if pending_quotes > 1 else ''} awaiting review")
    if active_pos > 0:
        parts.append(f"{active_pos} active PO{'s' if active_pos > 1 else ''}")
    if anomalies > 0:
        parts.append(f"{anomalies} price anomal{'ies' if anomalies > 1 else 'y'} to review")
    if not parts:
        return "You're all caught up! No pending items."
    return f"You have {', '.join(parts)}."


def get_quick_stats(db: Session, company_id: int) -> Dict[str, Any]:
    """Counts of work waiting for the company, with a one-line summary."""
    pending_rfqs = db.query(func.count(RFQ.id)).filter(
        RFQ.company_id == company_id, RFQ.status == RFQStatus.DRAFT,
    ).scalar() or 0
    pending_quotes = db.query(func.count(Quote.id)).join(RFQ, Quote.rfq_id == RFQ.id).filter(
        RFQ.company_id == company_id, Quote.status == QuoteStatus.SUBMITTED,
    ).scalar() or 0
    active_pos = db.query(func.count(PurchaseOrder.id)).filter(
        PurchaseOrder.company_id == company_id, PurchaseOrder.status.in_(ACTIVE_PO_STATUSES),
    ).scalar() or 0
    recent_anomalies = db.query(func.count(PriceAnomaly.id)).filter(
        PriceAnomaly.company_id == company_id,
        PriceAnomaly.acknowledged.is_(False),
        PriceAnomaly.created_at >= utcnow() - timedelta(days=ANOMALY_LOOKBACK_DAYS),
    ).scalar() or 0

    return {
        "pending_rfqs": pending_rfqs,
        "pending_quotes": pending_quotes,
        "active_pos": active_pos,
        "recent_anomalies": recent_anomalies,
        "message": summarize_stats(pending_rfqs, pending_quotes, active_pos, recent_anomalies),
    }


def build_user_context(db: Session, company_id: int) -> str:
    """Company procurement summary for the prompt."""
    try:
        rfq_count = db.query(func.count(RFQ.id)).filter(RFQ.company_id == company_id).scalar() or 0
        quote_count = db.query(func.count(Quote.id)).join(RFQ, Quote.rfq_id == RFQ.id).filter(
            RFQ.company_id == company_id,
        ).scalar() or 0
        po_count = db.query(func.count(PurchaseOrder.id)).filter(
            PurchaseOrder.company_id == company_id,
        ).scalar() or 0
        vendor_count = db.query(func.count(Vendor.id)).filter(
            Vendor.company_id == company_id, Vendor.is_active.is_(True),
        ).scalar() or 0
        item_count = db.query(func.count(Item.id)).filter(Item.company_id == company_id).scalar() or 0

        recent_rfqs = db.query(RFQ).filter(RFQ.company_id == company_id).order_by(
            RFQ.created_at.desc(), RFQ.id.desc(),
        ).limit(3).all()
        recent_pos = db.query(PurchaseOrder).filter(PurchaseOrder.company_id == company_id).order_by(
            PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc(),
        ).limit(3).all()
    except SQLAlchemyError as e:
        logger.warning(f"Could not build chat context for company {company_id}: {e}")
        db.rollback()
        return CONTEXT_UNAVAILABLE

    rfq_line = ", ".join(f"{r.title} ({r.status.value})" for r in recent_rfqs) or "None"
    po_line = ", ".join(
        f"{p.po_number} - {format_inr(p.total_amount or 0)} ({p.status.value})" for p in recent_pos
    ) or "None"
    return (
        "Procurement summary:\n"
        f"- Total RFQs: {rfq_count}\n"
        f"- Total quotes: {quote_count}\n"
        f"- Total purchase orders: {po_count}\n"
        f"- Active vendors: {vendor_count}\n"
        f"- Catalog items: {item_count}\n"
        f"Recent RFQs: {rfq_line}\n"
        f"Recent POs: {po_line}"
    )


class ProcurementChatbot:
    """Per-user assistant conversations."""

    def __init__(self, ai: AICapability, cache: ConversationCache):
        self.ai = ai
        self.cache = cache

    def chat(
        self,
        db: Session,
        company_id: int,
        user_id: Optional[int],
        message: str,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        message = (message or "").strip()
        if not message:
            raise ValueError("message is required")

        session = self._owned_session(company_id, user_id, session_id)
        if session is None:
            session = ChatSession(session_id=f"chat_{uuid.uuid4().hex}", user_id=user_id, company_id=company_id)
            logger.info(f"Started chat session {session.session_id} for user {user_id}")
        session.transcript.append(("user", message))

        response, source = self._respond(db, session, message)

        session.transcript.append(("assistant", response))
        session.updated_at = utcnow()
        self.cache.put(session)
        return {
            "session_id": session.session_id,
            "response": response,
            "suggestions": suggest_follow_ups(message),
            "source": source,
        }

    def get_history(self, company_id: int, user_id: Optional[int], session_id: str) -> List[Dict[str, str]]:
        session = self._owned_session(company_id, user_id, session_id)
        if session is None:
            raise NotFound("ChatSession", session_id)
        return [{"role": role, "content": content} for role, content in session.transcript]

    def clear_session(self, company_id: int, user_id: Optional[int], session_id: str) -> bool:
        if self._owned_session(company_id, user_id, session_id) is None:
            return False
        self.cache.evict(session_id)
        return True

    def _owned_session(
        self, company_id: int, user_id: Optional[int], session_id: Optional[str]
    ) -> Optional[ChatSession]:
        if not session_id:
            return None
        session = self.cache.get(session_id)
        if not isinstance(session, ChatSession):
            return None
        if session.company_id != company_id or session.user_id != user_id:
            return None
        return session

    def _respond(self, db: Session, session: ChatSession, message: str) -> Tuple[str, str]:
        if not self.ai.is_available():
            return self._fallback_reply(db, session.company_id, message), "rule-based"

        window = session.transcript[-settings.CHAT_HISTORY_WINDOW:]
        history = "\n".join(f"{'User' if role == 'user' else 'Assistant'}: {content}" for role, content in window)
        prompt = (
            f"USER CONTEXT:\n{build_user_context(db, session.company_id)}\n\n"
            f"CONVERSATION HISTORY:\n{history}\n\n"
            f"User's current question: {message}"
        )

        started = time.monotonic()
        try:
            raw = self.ai.generate_text(prompt, system_prompt=SYSTEM_PROMPT)
        except AIProviderError as e:
            logger.warning(f"Chat reply failed for session {session.session_id}, using rule-based: {e}")
            log_usage(
                db, session.company_id, session.user_id, AIFeature.CHATBOT, self.ai.text_model,
                estimate_tokens(prompt), 0, int((time.monotonic() - started) * 1000), False,
                error=str(e), metadata={"session_id": session.session_id},
            )
            return self._fallback_reply(db, session.company_id, message), "rule-based"

        log_usage(
            db, session.company_id, session.user_id, AIFeature.CHATBOT, self.ai.text_model,
            estimate_tokens(prompt), estimate_tokens(raw), int((time.monotonic() - started) * 1000), True,
            metadata={"session_id": session.session_id},
        )
        reply = (raw or "").strip()
        if not reply:
            logger.warning(f"Empty chat reply for session {session.session_id}, using rule-based")
            return self._fallback_reply(db, session.company_id, message), "rule-based"
        return reply, "ai"

    def _fallback_reply(self, db: Session, company_id: int, message: str) -> str:
        text = message.lower()
        hints = [hint for keywords, hint in _TOPIC_HINTS if any(k in text for k in keywords)]
        try:
            summary = get_quick_stats(db, company_id)["message"]
        except SQLAlchemyError as e:
            logger.warning(f"Quick stats unavailable for company {company_id}: {e}")
            db.rollback()
            summary = "Your procurement summary is not available right now."
        lines = [
            "The AI assistant is running in fallback mode, so answers are limited.",
            summary,
        ]
        lines.extend(hints or ["Ask about RFQs, quotes, vendors, prices or negotiations to get pointers."])
        return "\n".join(lines)
