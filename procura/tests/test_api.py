"""
HTTP-level tests for the intelligence API.

The app runs against the per-test SQLite session with scripted AI and OCR
engines placed on app.state; tokens are minted with the shared secret.
"""
import pytest
from fastapi.testclient import TestClient

from procura.core.security import create_access_token
from procura.db.models import POStatus
from procura.db.session import get_db
from procura.main import create_app
from procura.services.chatbot import ProcurementChatbot
from procura.services.negotiation_copilot import NegotiationCopilot
from procura.services.session_store import ConversationCache

QUOTE_TEXT = "Quotation No: QT-77\nGrand Total: Rs. 1,18,000.00\nGST: Rs. 18,000.00"


@pytest.fixture
def app(db_session, null_ai, make_ocr):
    app = create_app()

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.ai = null_ai
    app.state.ocr = make_ocr(QUOTE_TEXT, 90.0)
    app.state.copilot = NegotiationCopilot(null_ai, ConversationCache(ttl_seconds=60, max_entries=10))
    app.state.chatbot = ProcurementChatbot(null_ai, ConversationCache(ttl_seconds=60, max_entries=10))
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def auth(company, role="operator", user_id=7):
    token = create_access_token({"sub": str(user_id), "company_id": company.id, "role": role})
    return {"Authorization": f"Bearer {token}"}


class TestPlatform:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status_in_fallback_mode(self, client):
        data = client.get("/api/ai/status").json()
        assert data["available"] is False
        assert data["mode"] == "fallback"

    def test_missing_token(self, client):
        assert client.get("/api/ai/usage").status_code in (401, 403)

    def test_bad_token(self, client):
        response = client.get("/api/ai/usage", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_viewer_cannot_mutate(self, client, company):
        response = client.post("/api/ai/vendor-score/recalculate-all", headers=auth(company, role="viewer"))
        assert response.status_code == 403

    def test_usage(self, client, company):
        response = client.get("/api/ai/usage", headers=auth(company, role="viewer"))
        assert response.status_code == 200
        assert response.json()["total_requests"] == 0


class TestExtractionRoutes:
    def upload(self, client, company, name="quote.png"):
        return client.post(
            "/api/ai/ocr/extract",
            files={"file": (name, b"fake-image", "image/png")},
            headers=auth(company),
        )

    def test_upload_and_approve(self, client, company):
        response = self.upload(client, company)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "extracted"
        assert body["extraction_method"] == "local-ocr"
        assert body["structured_data"]["grand_total"] == 118000.0

        corrected = dict(body["structured_data"], vendor_name="Sigma Chemicals")
        approved = client.post(
            f"/api/ai/ocr/{body['id']}/approve", json={"corrected_data": corrected}, headers=auth(company)
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"

        conflict = client.post(
            f"/api/ai/ocr/{body['id']}/approve", json={"corrected_data": {"grand_total": 1}}, headers=auth(company)
        )
        assert conflict.status_code == 409

    def test_unsupported_file_type(self, client, company):
        assert self.upload(client, company, name="quote.txt").status_code == 400

    def test_list_and_get(self, client, company):
        created = self.upload(client, company).json()
        listed = client.get("/api/ai/ocr", headers=auth(company, role="viewer")).json()
        assert [e["id"] for e in listed] == [created["id"]]

        detail = client.get(f"/api/ai/ocr/{created['id']}", headers=auth(company, role="viewer")).json()
        assert "Quotation No" in detail["raw_text"]

    def test_unknown_extraction(self, client, company):
        assert client.get("/api/ai/ocr/999", headers=auth(company)).status_code == 404


class TestPricingRoutes:
    def test_detect_and_acknowledge(self, client, factory, company):
        item = factory.item(company)
        rfq = factory.rfq(company, items=[item])
        factory.quote(rfq, factory.vendor(company), 100000)
        quote = factory.quote(rfq, factory.vendor(company), 130000)

        detected = client.post(f"/api/ai/anomaly/detect/{quote.id}", headers=auth(company))
        assert detected.status_code == 200
        anomalies = detected.json()
        assert anomalies[0]["severity"] == "extremely_high"

        ack = client.post(f"/api/ai/anomaly/{anomalies[0]['id']}/acknowledge", headers=auth(company))
        assert ack.json()["acknowledged"] is True

        recent = client.get("/api/ai/anomaly/recent", headers=auth(company)).json()
        assert recent[0]["anomaly"]["id"] == anomalies[0]["id"]

    def test_forecast_flow(self, client, factory, company):
        item = factory.item(company)
        for price in (110, 105, 98, 102):
            response = client.post(
                "/api/ai/price-history", json={"item_id": item.id, "price": price}, headers=auth(company)
            )
            assert response.status_code == 200

        forecast = client.post(f"/api/ai/forecast/{item.id}?horizon_days=30", headers=auth(company))
        assert forecast.status_code == 200
        assert forecast.json()["data_points_used"] == 4

        trends = client.get("/api/ai/forecast/trends", headers=auth(company)).json()
        assert trends["items_forecasted"] == 1

        history = client.get(f"/api/ai/forecast/{item.id}/history", headers=auth(company)).json()
        assert len(history) == 4

    def test_negative_price_rejected(self, client, factory, company):
        item = factory.item(company)
        response = client.post(
            "/api/ai/price-history", json={"item_id": item.id, "price": -5}, headers=auth(company)
        )
        assert response.status_code == 422

    def test_forecast_unknown_item(self, client, company):
        assert client.post("/api/ai/forecast/4242", headers=auth(company)).status_code == 404


class TestVendorRoutes:
    def test_score_and_recommend(self, client, factory, company):
        item = factory.item(company)
        vendor = factory.vendor(company)

        assert client.get(f"/api/ai/vendor-score/{vendor.id}", headers=auth(company)).status_code == 404
        scored = client.post(f"/api/ai/vendor-score/{vendor.id}", headers=auth(company))
        assert scored.status_code == 200
        assert scored.json()["tier"] == "C"

        recs = client.post(
            "/api/ai/vendor-recommendation", json={"item_ids": [item.id], "urgency": "high"}, headers=auth(company)
        )
        assert recs.status_code == 200
        rec = recs.json()[0]
        assert rec["vendor_id"] == vendor.id

        selected = client.post(f"/api/ai/vendor-recommendation/{rec['id']}/select", headers=auth(company))
        assert selected.json()["is_selected"] is True

    def test_invalid_urgency(self, client, factory, company):
        item = factory.item(company)
        response = client.post(
            "/api/ai/vendor-recommendation", json={"item_ids": [item.id], "urgency": "asap"}, headers=auth(company)
        )
        assert response.status_code == 422


class TestNegotiationRoutes:
    def test_full_session(self, client, factory, company):
        vendor = factory.vendor(company, "Sigma Chemicals")
        headers = auth(company)

        session = client.post(
            "/api/ai/negotiation/sessions",
            json={"vendor_id": vendor.id, "current_price": 100000},
            headers=headers,
        ).json()
        assert session["status"] == "active"

        message = client.post(
            f"/api/ai/negotiation/sessions/{session['id']}/messages",
            json={"role": "vendor", "content": "Our best is 98,000"},
            headers=headers,
        )
        assert message.status_code == 200

        suggestion = client.post(f"/api/ai/negotiation/sessions/{session['id']}/suggestion", headers=headers)
        assert suggestion.status_code == 200
        assert suggestion.json()["source"] == "rule-based"
        assert suggestion.json()["suggested_price"] == 90000.0

        closed = client.post(
            f"/api/ai/negotiation/sessions/{session['id']}/status",
            json={"status": "accepted", "final_price": 93000},
            headers=headers,
        )
        assert closed.json()["status"] == "accepted"

        detail = client.get(f"/api/ai/negotiation/sessions/{session['id']}", headers=headers).json()
        assert [m["role"] for m in detail["messages"]] == ["vendor"]

        listed = client.get("/api/ai/negotiation/sessions", headers=headers).json()
        assert listed[0]["message_count"] == 1

        late = client.post(
            f"/api/ai/negotiation/sessions/{session['id']}/messages",
            json={"role": "user", "content": "One more thing"},
            headers=headers,
        )
        assert late.status_code == 409

    def test_ai_role_is_rejected(self, client, factory, company):
        vendor = factory.vendor(company)
        session = client.post(
            "/api/ai/negotiation/sessions",
            json={"vendor_id": vendor.id, "current_price": 500},
            headers=auth(company),
        ).json()
        response = client.post(
            f"/api/ai/negotiation/sessions/{session['id']}/messages",
            json={"role": "ai_suggestion", "content": "fake"},
            headers=auth(company),
        )
        assert response.status_code == 422


class TestChatRoutes:
    def test_conversation_flow(self, client, factory, company):
        factory.rfq(company)
        headers = auth(company, role="viewer")

        first = client.post("/api/ai/chat", json={"message": "Any vendor updates?"}, headers=headers)
        assert first.status_code == 200
        data = first.json()
        assert data["session_id"].startswith("chat_")
        assert data["source"] == "rule-based"
        assert "You have 1 pending RFQ." in data["response"]
        assert data["suggestions"] == ["How does vendor scoring work?", "How can I compare vendors?"]

        session_id = data["session_id"]
        client.post("/api/ai/chat", json={"message": "Thanks", "session_id": session_id}, headers=headers)

        history = client.get(f"/api/ai/chat/session/{session_id}", headers=headers).json()
        assert [m["role"] for m in history] == ["user", "assistant", "user", "assistant"]
        assert history[0]["content"] == "Any vendor updates?"

        other_user = auth(company, role="viewer", user_id=8)
        assert client.get(f"/api/ai/chat/session/{session_id}", headers=other_user).status_code == 404
        assert client.post(f"/api/ai/chat/session/{session_id}/clear", headers=other_user).json() == {"success": False}

        assert client.post(f"/api/ai/chat/session/{session_id}/clear", headers=headers).json() == {"success": True}
        assert client.get(f"/api/ai/chat/session/{session_id}", headers=headers).status_code == 404

    def test_empty_message_rejected(self, client, company):
        response = client.post("/api/ai/chat", json={"message": ""}, headers=auth(company, role="viewer"))
        assert response.status_code == 422

    def test_stats(self, client, factory, company):
        factory.purchase_order(company, factory.vendor(company), status=POStatus.SENT)

        data = client.get("/api/ai/chat/stats", headers=auth(company, role="viewer")).json()
        assert data["active_pos"] == 1
        assert data["pending_rfqs"] == 0
        assert data["message"] == "You have 1 active PO."
