"""
Tests for the procurement assistant chatbot.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from procura.core.errors import NotFound, RateLimited
from procura.core.timeutils import utcnow
from procura.db.models import (
    AIFeature, AIUsageLog, AnomalySeverity, POStatus, PriceAnomaly, QuoteStatus, RFQStatus,
)
from procura.services.chatbot import (
    CONTEXT_UNAVAILABLE,
    ProcurementChatbot,
    build_user_context,
    get_quick_stats,
    suggest_follow_ups,
    summarize_stats,
)
from procura.services.session_store import ConversationCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_chatbot(clock):
    def build(ai):
        return ProcurementChatbot(ai, ConversationCache(ttl_seconds=600, max_entries=10, clock=clock))
    return build


def add_anomaly(db, company, quote, days_ago=0, acknowledged=False):
    db.add(PriceAnomaly(
        company_id=company.id,
        quote_id=quote.id,
        detected_price=130,
        expected_price=100,
        deviation_pct=30,
        severity=AnomalySeverity.EXTREMELY_HIGH,
        acknowledged=acknowledged,
        created_at=utcnow() - timedelta(days=days_ago),
    ))
    db.commit()


class TestHelpers:
    def test_suggestions_follow_topics(self):
        assert suggest_follow_ups("Where is my PO?") == [
            "How do I track deliveries?",
            "What are the PO approval workflows?",
        ]
        assert suggest_follow_ups("How do costs look?")[0] == "How does price anomaly detection work?"

    def test_suggestions_are_capped(self):
        suggestions = suggest_follow_ups("Compare the vendor quote price")
        assert suggestions == [
            "How do I create a new RFQ?",
            "Show me best practices for RFQ management",
            "How does vendor scoring work?",
        ]

    def test_po_needs_a_whole_word(self):
        assert suggest_follow_ups("Send me a report") == [
            "What AI features are available?",
            "How do I get started with procurement?",
            "Show me my recent activity",
        ]

    def test_summary_wording(self):
        assert summarize_stats(0, 0, 0, 0) == "You're all caught up! No pending items."
        assert summarize_stats(1, 2, 0, 1) == (
            "You have 1 pending RFQ, 2 quotes awaiting review, 1 price anomaly to review."
        )
        assert summarize_stats(2, 0, 3, 2) == "You have 2 pending RFQs, 3 active POs, 2 price anomalies to review."


class TestQuickStats:
    def test_counts_are_company_scoped(self, db_session, factory, company):
        vendor = factory.vendor(company)
        rfq = factory.rfq(company)
        sent = factory.rfq(company)
        sent.status = RFQStatus.SENT
        db_session.commit()
        quote = factory.quote(rfq, vendor, 100)
        factory.quote(rfq, vendor, 90, status=QuoteStatus.APPROVED)
        factory.purchase_order(company, vendor, status=POStatus.APPROVED)
        factory.purchase_order(company, vendor, status=POStatus.SENT)
        factory.purchase_order(company, vendor, status=POStatus.COMPLETED)
        add_anomaly(db_session, company, quote)
        add_anomaly(db_session, company, quote, days_ago=10)
        add_anomaly(db_session, company, quote, acknowledged=True)

        other = factory.company("Other Co")
        factory.rfq(other)

        stats = get_quick_stats(db_session, company.id)
        assert stats == {
            "pending_rfqs": 1,
            "pending_quotes": 1,
            "active_pos": 2,
            "recent_anomalies": 1,
            "message": "You have 1 pending RFQ, 1 quote awaiting review, 2 active POs, 1 price anomaly to review.",
        }

    def test_nothing_pending(self, db_session, company):
        assert get_quick_stats(db_session, company.id)["message"] == "You're all caught up! No pending items."


class TestUserContext:
    def test_summary_and_recent_activity(self, db_session, factory, company):
        vendor = factory.vendor(company)
        factory.vendor(company, is_active=False)
        item = factory.item(company)
        rfq = factory.rfq(company, items=[item])
        factory.quote(rfq, vendor, 100)
        factory.purchase_order(company, vendor, status=POStatus.SENT, total=118000)

        context = build_user_context(db_session, company.id)

        assert "- Total RFQs: 1" in context
        assert "- Total quotes: 1" in context
        assert "- Active vendors: 1" in context
        assert "- Catalog items: 1" in context
        assert f"Recent RFQs: {rfq.title} (draft)" in context
        assert "- ₹118,000 (sent)" in context

    def test_empty_company(self, db_session, company):
        context = build_user_context(db_session, company.id)
        assert "Recent RFQs: None" in context
        assert "Recent POs: None" in context

    def test_database_error_degrades(self):
        db = MagicMock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))

        assert build_user_context(db, 1) == CONTEXT_UNAVAILABLE
        db.rollback.assert_called_once()


class TestChat:
    def test_fallback_reply(self, db_session, factory, company, null_ai, make_chatbot):
        factory.rfq(company)
        chatbot = make_chatbot(null_ai)

        result = chatbot.chat(db_session, company.id, 7, "How do I negotiate on price?")

        assert result["source"] == "rule-based"
        assert "fallback mode" in result["response"]
        assert "You have 1 pending RFQ." in result["response"]
        assert "negotiation copilot" in result["response"]
        assert result["suggestions"][0] == "How does price anomaly detection work?"
        assert db_session.query(AIUsageLog).count() == 0

    def test_ai_reply_and_prompt(self, db_session, factory, company, make_ai, make_chatbot):
        factory.rfq(company)
        ai = make_ai(text_responses=["  You have one draft RFQ.  "])
        chatbot = make_chatbot(ai)

        result = chatbot.chat(db_session, company.id, 7, "What is pending?")

        assert result["source"] == "ai"
        assert result["response"] == "You have one draft RFQ."
        prompt = ai.text_prompts[0]
        assert "- Total RFQs: 1" in prompt
        assert "User: What is pending?" in prompt
        assert prompt.endswith("User's current question: What is pending?")

        usage = db_session.query(AIUsageLog).one()
        assert usage.feature == AIFeature.CHATBOT
        assert usage.success is True
        assert usage.extra_data["session_id"] == result["session_id"]

    def test_history_window(self, db_session, company, make_ai, make_chatbot):
        ai = make_ai(text_responses=[f"answer {n}" for n in range(7)])
        chatbot = make_chatbot(ai)

        session_id = None
        for n in range(7):
            session_id = chatbot.chat(db_session, company.id, 7, f"question {n}", session_id=session_id)["session_id"]

        prompt = ai.text_prompts[-1]
        assert "User: question 1" not in prompt
        assert "Assistant: answer 0" not in prompt
        assert "Assistant: answer 1" in prompt
        assert "User: question 6" in prompt
        assert len(chatbot.get_history(company.id, 7, session_id)) == 14

    def test_ai_failure_falls_back(self, db_session, company, make_ai, make_chatbot):
        ai = make_ai(text_responses=[RateLimited("slow down")])
        chatbot = make_chatbot(ai)

        result = chatbot.chat(db_session, company.id, 7, "Hello")

        assert result["source"] == "rule-based"
        assert "You're all caught up!" in result["response"]
        usage = db_session.query(AIUsageLog).one()
        assert usage.success is False
        assert usage.error == "slow down"

    def test_empty_message(self, db_session, company, null_ai, make_chatbot):
        with pytest.raises(ValueError):
            make_chatbot(null_ai).chat(db_session, company.id, 7, "   ")


class TestSessions:
    def test_expired_session_starts_over(self, db_session, company, null_ai, make_chatbot, clock):
        chatbot = make_chatbot(null_ai)
        first = chatbot.chat(db_session, company.id, 7, "Hi")["session_id"]

        clock.now += 601
        second = chatbot.chat(db_session, company.id, 7, "Still there?", session_id=first)["session_id"]

        assert second != first
        assert [m["content"] for m in chatbot.get_history(company.id, 7, second)][0] == "Still there?"
        with pytest.raises(NotFound):
            chatbot.get_history(company.id, 7, first)

    def test_foreign_session_is_not_joined(self, db_session, factory, company, null_ai, make_chatbot):
        chatbot = make_chatbot(null_ai)
        mine = chatbot.chat(db_session, company.id, 7, "Hi")["session_id"]

        theirs = chatbot.chat(db_session, company.id, 8, "Hello", session_id=mine)["session_id"]
        other_company = factory.company("Other Co")
        elsewhere = chatbot.chat(db_session, other_company.id, 7, "Hello", session_id=mine)["session_id"]

        assert mine not in (theirs, elsewhere)
        assert len(chatbot.get_history(company.id, 7, mine)) == 2
        with pytest.raises(NotFound):
            chatbot.get_history(company.id, 8, mine)

    def test_clear_session(self, db_session, company, null_ai, make_chatbot):
        chatbot = make_chatbot(null_ai)
        session_id = chatbot.chat(db_session, company.id, 7, "Hi")["session_id"]

        assert chatbot.clear_session(company.id, 8, session_id) is False
        assert chatbot.clear_session(company.id, 7, session_id) is True
        assert chatbot.clear_session(company.id, 7, session_id) is False
        assert len(chatbot.cache) == 0
