"""
Negotiation copilot.

Sessions move ACTIVE -> ACCEPTED | REJECTED | EXPIRED and never leave a
terminal status. Messages are append-only. Suggestions come from the text
model when available, otherwise from two fixed templates.

Durable state is committed before the conversation cache is touched, so
losing the cache never loses data. Prompts are always built from the
database; the cache only accumulates the live transcript between calls.
"""
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from procura.core.errors import AIProviderError, InvalidStateTransition, NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import utcnow
from procura.db.models import (
    AIFeature, MessageRole, NegotiationMessage, NegotiationSession, NegotiationStatus, Vendor,
)
from procura.services.ai_gateway import AICapability, estimate_tokens, log_usage
from procura.services.audit import record_audit
from procura.services.session_store import CachedConversation, ConversationCache
from procura.services.structured_response import parse_structured_response

logger = get_logger(__name__)


DEFAULT_DISCOUNT = 0.9
PRECEDENT_LIMIT = 5
TERMINAL_STATUSES = (NegotiationStatus.ACCEPTED, NegotiationStatus.REJECTED, NegotiationStatus.EXPIRED)
_SPEAKERS = {
    MessageRole.USER: "BUYER",
    MessageRole.VENDOR: "VENDOR",
    MessageRole.AI_SUGGESTION: "ASSISTANT",
}


@dataclass
class NegotiationSuggestion:
    suggested_message: str
    suggested_price: Optional[float]
    strategy: str
    confidence: float
    source: str = "rule-based"


def format_inr(amount: float) -> str:
    if float(amount).is_integer():
        return f"₹{amount:,.0f}"
    return f"₹{amount:,.2f}"


def counter_offer_price(current_price: float, target_price: Optional[float]) -> float:
    if target_price is not None:
        return target_price
    return round(current_price * DEFAULT_DISCOUNT, 2)


def rule_based_suggestion(
    current_price: float,
    target_price: Optional[float],
    message_count: int,
) -> NegotiationSuggestion:
    price = counter_offer_price(current_price, target_price)
    if message_count == 0:
        return NegotiationSuggestion(
            suggested_message=(
                f"Thank you for your quote of {format_inr(current_price)}. We appreciate your competitive "
                "pricing. However, based on our budget constraints and market research, we would like to "
                f"request if you could consider a revised price of {format_inr(price)}. We are committed to "
                "building a long-term partnership and would value your flexibility."
            ),
            suggested_price=price,
            strategy="Initial counter-offer with relationship emphasis",
            confidence=0.6,
        )
    return NegotiationSuggestion(
        suggested_message=(
            "We understand your position and value our business relationship. To move forward, we "
            f"propose meeting in the middle at {format_inr(price)}. We can also discuss favorable payment "
            "terms such as advance payment or increased order volume to make this work for both parties."
        ),
        suggested_price=price,
        strategy="Compromise with concession offer",
        confidence=0.5,
    )


class NegotiationCopilot:
    """Session lifecycle and suggestion generation."""

    def __init__(self, ai: AICapability, cache: ConversationCache):
        self.ai = ai
        self.cache = cache

    # ============= SESSION LIFECYCLE =============

    def start_session(
        self,
        db: Session,
        company_id: int,
        user_id: Optional[int],
        vendor_id: int,
        current_price: float,
        target_price: Optional[float] = None,
        quote_id: Optional[int] = None,
        rfq_id: Optional[int] = None,
    ) -> NegotiationSession:
        if current_price is None or current_price <= 0:
            raise ValueError("current_price must be positive")
        if target_price is not None and target_price < 0:
            raise ValueError("target_price cannot be negative")
        vendor = db.query(Vendor).filter(Vendor.id == vendor_id, Vendor.company_id == company_id).first()
        if not vendor:
            raise NotFound("Vendor", vendor_id)

        session = NegotiationSession(
            company_id=company_id,
            vendor_id=vendor_id,
            quote_id=quote_id,
            rfq_id=rfq_id,
            current_price=current_price,
            target_price=target_price,
            status=NegotiationStatus.ACTIVE,
            created_by=user_id,
        )
        db.add(session)
        db.commit()
        db.refresh(session)

        record_audit(
            db, company_id, user_id, "NEGOTIATION_SESSION_STARTED", "NegotiationSession", session.id,
            {"vendor_id": vendor_id, "current_price": current_price, "target_price": target_price},
        )
        return session

    def add_message(
        self,
        db: Session,
        company_id: int,
        user_id: Optional[int],
        session_id: int,
        role: MessageRole,
        content: str,
        is_edited: bool = False,
        original_content: Optional[str] = None,
    ) -> NegotiationMessage:
        if role not in (MessageRole.USER, MessageRole.VENDOR):
            raise ValueError("Only user or vendor messages can be added")
        if not content or not content.strip():
            raise ValueError("Message content cannot be empty")

        session = self.get_session(db, company_id, session_id)
        self._require_active(session, "add_message")

        message = NegotiationMessage(
            session_id=session.id,
            role=role,
            content=content,
            is_ai_generated=False,
            is_edited=is_edited,
            original_content=original_content if is_edited else None,
        )
        db.add(message)
        session.updated_at = utcnow()
        db.commit()
        db.refresh(message)

        self.cache.append(session_id, _SPEAKERS[role], content)
        record_audit(
            db, company_id, user_id, "NEGOTIATION_MESSAGE_SENT", "NegotiationMessage", message.id,
            {"session_id": session_id, "role": role.value, "is_edited": is_edited},
        )
        return message

    def update_session_status(
        self,
        db: Session,
        company_id: int,
        user_id: Optional[int],
        session_id: int,
        status: NegotiationStatus,
        final_price: Optional[float] = None,
    ) -> NegotiationSession:
        """Close an ACTIVE session. Terminal sessions reject every transition."""
        session = self.get_session(db, company_id, session_id)
        previous = session.status
        if previous in TERMINAL_STATUSES or status not in TERMINAL_STATUSES:
            raise InvalidStateTransition("NegotiationSession", session_id, previous, status)

        session.status = status
        if status == NegotiationStatus.ACCEPTED and final_price is not None:
            session.ai_suggested_price = final_price
        session.closed_at = utcnow()
        session.updated_at = session.closed_at
        db.commit()
        db.refresh(session)

        self.cache.evict(session_id)
        record_audit(
            db, company_id, user_id, "NEGOTIATION_STATUS_UPDATED", "NegotiationSession", session_id,
            {"previous_status": previous.value, "new_status": status.value, "final_price": final_price},
        )
        return session

    # ============= SUGGESTIONS =============

    def get_suggestion(
        self,
        db: Session,
        company_id: int,
        user_id: Optional[int],
        session_id: int,
        context: Optional[str] = None,
    ) -> NegotiationSuggestion:
        session = self.get_session(db, company_id, session_id)
        self._require_active(session, "get_suggestion")
        message_count = len(session.messages)

        if not self.ai.is_available():
            return rule_based_suggestion(session.current_price, session.target_price, message_count)

        started = time.monotonic()
        conversation = self._conversation(db, session)
        prompt = self._build_prompt(session, conversation, context)
        try:
            raw = self.ai.generate_text(prompt)
        except AIProviderError as e:
            logger.warning(f"AI suggestion failed for session {session_id}, using rule-based: {e}")
            log_usage(
                db, company_id, user_id, AIFeature.NEGOTIATION_COPILOT, self.ai.text_model,
                estimate_tokens(prompt), 0, int((time.monotonic() - started) * 1000), False,
                error=str(e), metadata={"session_id": session_id},
            )
            return rule_based_suggestion(session.current_price, session.target_price, message_count)

        log_usage(
            db, company_id, user_id, AIFeature.NEGOTIATION_COPILOT, self.ai.text_model,
            estimate_tokens(prompt), estimate_tokens(raw), int((time.monotonic() - started) * 1000), True,
            metadata={"session_id": session_id},
        )

        parsed = parse_structured_response(raw, required_keys=("suggestedMessage",))
        suggestion = _suggestion_from_payload(parsed.value) if parsed.ok else None
        if suggestion is None:
            logger.warning(
                f"Unusable AI suggestion for session {session_id} ({parsed.error or 'empty message'}), using rule-based"
            )
            return rule_based_suggestion(session.current_price, session.target_price, message_count)

        message = NegotiationMessage(
            session_id=session.id,
            role=MessageRole.AI_SUGGESTION,
            content=suggestion.suggested_message,
            is_ai_generated=True,
        )
        db.add(message)
        if suggestion.suggested_price is not None:
            session.ai_suggested_price = suggestion.suggested_price
        session.updated_at = utcnow()
        db.commit()

        self.cache.append(session_id, _SPEAKERS[MessageRole.AI_SUGGESTION], suggestion.suggested_message)
        record_audit(
            db, company_id, user_id, "NEGOTIATION_SUGGESTION_GENERATED", "NegotiationSession", session_id,
            {"suggested_price": suggestion.suggested_price, "strategy": suggestion.strategy},
        )
        return suggestion

    def _conversation(self, db: Session, session: NegotiationSession) -> CachedConversation:
        """
        Transcript and accepted precedents as committed in the database.

        Messages from other workers and sessions accepted since the last call
        are included; the cached entry is replaced with the rebuilt one.
        """
        messages = db.query(NegotiationMessage).filter(
            NegotiationMessage.session_id == session.id,
        ).order_by(NegotiationMessage.created_at, NegotiationMessage.id).all()

        previous = db.query(NegotiationSession).filter(
            NegotiationSession.company_id == session.company_id,
            NegotiationSession.vendor_id == session.vendor_id,
            NegotiationSession.id != session.id,
            NegotiationSession.status == NegotiationStatus.ACCEPTED,
        ).order_by(NegotiationSession.created_at.desc()).limit(PRECEDENT_LIMIT).all()

        conversation = CachedConversation(
            session_id=session.id,
            vendor_name=session.vendor.name if session.vendor else "Unknown",
            transcript=[(_SPEAKERS[m.role], m.content) for m in messages],
            precedents=[
                f"Started at {format_inr(s.current_price)}, agreed at "
                f"{format_inr(s.ai_suggested_price) if s.ai_suggested_price is not None else 'unknown'}"
                for s in previous
            ],
        )
        self.cache.put(conversation)
        return conversation

    @staticmethod
    def _build_prompt(
        session: NegotiationSession,
        conversation: CachedConversation,
        context: Optional[str],
    ) -> str:
        if session.target_price is not None:
            gap = session.current_price - session.target_price
            target = format_inr(session.target_price)
            gap_text = f"{format_inr(gap)} ({gap / session.current_price * 100:.1f}%)"
        else:
            target = "Not specified"
            gap_text = "N/A"

        precedents = "\n".join(f"- {p}" for p in conversation.precedents) or "No previous negotiations"
        transcript = "\n".join(f"{speaker}: {text}" for speaker, text in conversation.transcript) or "No messages yet"
        extra = f"\nAdditional context: {context}\n" if context else ""

        return f"""You are assisting a buyer in a price negotiation with a vendor.

Negotiation:
- Vendor: {conversation.vendor_name}
- Current quote: {format_inr(session.current_price)}
- Target price: {target}
- Price gap: {gap_text}

Previously accepted negotiations with this vendor:
{precedents}

Conversation so far:
{transcript}
{extra}
Write the buyer's next message. Keep it professional, protect the relationship,
move toward the target price when one is set, give legitimate business reasons,
and offer concessions such as volume or payment terms where useful.

Respond with JSON only:
{{
  "suggestedMessage": "Message to send to the vendor",
  "suggestedPrice": 85000,
  "strategy": "One-line description of the approach",
  "confidence": 0.8
}}
Use null for suggestedPrice when the message is an initial inquiry."""

    # ============= QUERIES =============

    def get_session(self, db: Session, company_id: int, session_id: int) -> NegotiationSession:
        session = db.query(NegotiationSession).filter(
            NegotiationSession.id == session_id,
            NegotiationSession.company_id == company_id,
        ).first()
        if not session:
            raise NotFound("NegotiationSession", session_id)
        return session

    def list_sessions(
        self,
        db: Session,
        company_id: int,
        vendor_id: Optional[int] = None,
    ) -> List[Tuple[NegotiationSession, int]]:
        """Sessions newest first, each with its message count."""
        counts = db.query(
            NegotiationMessage.session_id, func.count(NegotiationMessage.id).label("message_count")
        ).group_by(NegotiationMessage.session_id).subquery()

        query = db.query(NegotiationSession, func.coalesce(counts.c.message_count, 0)).outerjoin(
            counts, counts.c.session_id == NegotiationSession.id
        ).filter(NegotiationSession.company_id == company_id)
        if vendor_id is not None:
            query = query.filter(NegotiationSession.vendor_id == vendor_id)
        return [
            (session, int(count))
            for session, count in query.order_by(
                NegotiationSession.created_at.desc(), NegotiationSession.id.desc()
            ).all()
        ]

    @staticmethod
    def _require_active(session: NegotiationSession, action: str) -> None:
        if session.status != NegotiationStatus.ACTIVE:
            raise InvalidStateTransition("NegotiationSession", session.id, session.status, action)


def _suggestion_from_payload(payload: dict) -> Optional[NegotiationSuggestion]:
    message = payload.get("suggestedMessage")
    if not isinstance(message, str) or not message.strip():
        return None

    price = payload.get("suggestedPrice")
    try:
        price = float(price) if price is not None else None
    except (TypeError, ValueError):
        price = None
    if price is not None and price <= 0:
        price = None

    try:
        confidence = float(payload.get("confidence", 0.7))
    except (TypeError, ValueError):
        confidence = 0.7

    return NegotiationSuggestion(
        suggested_message=message.strip(),
        suggested_price=price,
        strategy=str(payload.get("strategy") or "AI-generated counter-offer"),
        confidence=max(0.0, min(1.0, confidence)),
        source="ai",
    )
