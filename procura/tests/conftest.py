"""
Shared fixtures: an in-memory SQLite database, record factories and
scripted stand-ins for the AI provider and the OCR engine.
"""
import os

os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LLM_PROVIDER"] = "mock"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789"

from datetime import timedelta
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from procura.core.errors import ProviderError
from procura.core.timeutils import utcnow
from procura.db.session import Base
from procura.db.models import (
    Company, Delivery, DeliveryStatus, Item, POStatus, PriceHistory, PriceSource,
    PurchaseOrder, Quote, QuoteStatus, RFQ, RFQItem, Vendor,
)
from procura.services.ai_gateway import AICapability
from procura.services.ocr_engine import OCREngine, OCRResult


# ============= FAKES =============

class ScriptedAI(AICapability):
    """
    AICapability that replays scripted responses.

    Each scripted entry is either a string to return or an exception to raise.
    An exhausted script raises ProviderError.
    """

    provider = "openai"
    text_model = "gpt-4o-mini"
    vision_model = "gpt-4o"

    def __init__(self, text_responses=None, image_responses=None, available: bool = True):
        self.text_responses = list(text_responses or [])
        self.image_responses = list(image_responses or [])
        self.available = available
        self.text_prompts: List[str] = []
        self.image_prompts: List[str] = []

    def is_available(self) -> bool:
        return self.available

    def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        self.text_prompts.append(prompt)
        return self._next(self.text_responses)

    def analyze_image(self, image_bytes: bytes, prompt: str, mime_type: str = "image/png") -> str:
        self.image_prompts.append(prompt)
        return self._next(self.image_responses)

    @staticmethod
    def _next(responses):
        if not responses:
            raise ProviderError("AI service error: no scripted response")
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeOCR(OCREngine):
    def __init__(self, text: str = "", confidence: float = 90.0, engine: str = "tesseract", error=None):
        self.result = OCRResult(text=text, confidence=confidence, engine=engine)
        self.error = error
        self.calls = 0

    def recognize(self, content: bytes, mime_type: str = "image/png") -> OCRResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


# ============= DATABASE =============

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Fresh in-memory database per test."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSession()
    try:
        yield db
    finally:
        db.close()


# ============= FACTORIES =============

class Factory:
    """Creates committed records with sensible defaults."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def company(self, name: str = "Acme Pharma"):
        n = self._next()
        return self._save(Company(name=name, slug=f"company-{n}"))

    def vendor(self, company, name: Optional[str] = None, is_active: bool = True, **kwargs):
        n = self._next()
        return self._save(Vendor(
            company_id=company.id, name=name or f"Vendor {n}", is_active=is_active, **kwargs
        ))

    def item(self, company, name: Optional[str] = None, **kwargs):
        n = self._next()
        return self._save(Item(company_id=company.id, name=name or f"Item {n}", **kwargs))

    def rfq(self, company, items=(), created_at=None, quantity: float = 100.0):
        n = self._next()
        rfq = RFQ(
            company_id=company.id,
            rfq_number=f"RFQ-{n:04d}",
            title=f"RFQ {n}",
            created_at=created_at or utcnow(),
        )
        self.db.add(rfq)
        self.db.flush()
        for item in items:
            self.db.add(RFQItem(rfq_id=rfq.id, item_id=item.id, quantity=quantity))
        self.db.commit()
        self.db.refresh(rfq)
        return rfq

    def quote(
        self,
        rfq,
        vendor,
        base_price: float,
        gst_amount: float = 0.0,
        freight_cost: float = 0.0,
        status: QuoteStatus = QuoteStatus.SUBMITTED,
        submitted_at=None,
    ):
        return self._save(Quote(
            rfq_id=rfq.id,
            vendor_id=vendor.id,
            base_price=base_price,
            gst_amount=gst_amount,
            freight_cost=freight_cost,
            landed_cost=Quote.compute_landed_cost(base_price, gst_amount, freight_cost),
            status=status,
            submitted_at=submitted_at,
        ))

    def purchase_order(self, company, vendor, status: POStatus = POStatus.COMPLETED, quote=None, total: float = 0.0):
        n = self._next()
        return self._save(PurchaseOrder(
            company_id=company.id,
            vendor_id=vendor.id,
            quote_id=quote.id if quote else None,
            po_number=f"PO-{n:04d}",
            status=status,
            total_amount=total,
        ))

    def delivery(self, po, status: DeliveryStatus = DeliveryStatus.DELIVERED, days_late: Optional[int] = 0):
        expected = utcnow() - timedelta(days=10)
        received = expected + timedelta(days=days_late) if days_late is not None else None
        return self._save(Delivery(
            po_id=po.id,
            status=status,
            delivery_date=expected,
            received_date=received,
        ))

    def price_point(self, company, item, price: float, days_ago: int = 0, vendor=None):
        return self._save(PriceHistory(
            company_id=company.id,
            item_id=item.id,
            vendor_id=vendor.id if vendor else None,
            price=price,
            source=PriceSource.MANUAL,
            recorded_at=utcnow() - timedelta(days=days_ago),
        ))


@pytest.fixture
def factory(db_session):
    return Factory(db_session)


@pytest.fixture
def company(factory):
    return factory.company()


@pytest.fixture
def null_ai():
    """Capability with no provider: every engine takes its rule-based path."""
    return ScriptedAI(available=False)


@pytest.fixture
def make_ai():
    return ScriptedAI


@pytest.fixture
def make_ocr():
    return FakeOCR
