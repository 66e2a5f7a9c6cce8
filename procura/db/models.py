"""
SQLAlchemy ORM models for Procura.
All models are scoped to a company for multi-tenancy.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
import enum

from procura.core.timeutils import utcnow
from procura.db.session import Base


# ============= ENUMS =============
# Stored as plain strings (native_enum=False) so the same schema runs on
# PostgreSQL and on the SQLite test database.

class RFQStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    QUOTES_RECEIVED = "quotes_received"
    CLOSED = "closed"


class QuoteStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class POStatus(str, enum.Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    SENT = "sent"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    REJECTED = "rejected"


class PriceSource(str, enum.Enum):
    QUOTE = "quote"
    PURCHASE_ORDER = "purchase_order"
    MANUAL = "manual"


class AIFeature(str, enum.Enum):
    OCR_EXTRACTION = "ocr_extraction"
    PRICE_ANOMALY = "price_anomaly"
    PRICE_FORECAST = "price_forecast"
    VENDOR_SCORING = "vendor_scoring"
    VENDOR_RECOMMENDATION = "vendor_recommendation"
    NEGOTIATION_COPILOT = "negotiation_copilot"
    CHATBOT = "chatbot"


class ExtractionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    APPROVED = "approved"
    FAILED = "failed"


class ExtractionMethod(str, enum.Enum):
    LOCAL_OCR = "local-ocr"
    VISION_FALLBACK = "vision-fallback"


class AnomalySeverity(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    EXTREMELY_HIGH = "extremely_high"


class PriceTrend(str, enum.Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class VendorTier(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"


class NegotiationStatus(str, enum.Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class MessageRole(str, enum.Enum):
    USER = "user"
    VENDOR = "vendor"
    AI_SUGGESTION = "ai_suggestion"


def enum_values(enum_cls):
    return [e.value for e in enum_cls]


def enum_column_type(enum_cls, name: str) -> Enum:
    """String-backed enum type that persists member values (lowercase), not names."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=enum_values,
        validate_strings=True,
    )


# ============= TENANCY =============

class Company(Base):
    """Buying company (tenant)."""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    gstin = Column(String(20))
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    vendors = relationship("Vendor", back_populates="company")
    items = relationship("Item", back_populates="company")


class AuditLog(Base):
    """Audit trail written after every state-changing engine operation."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    user_id = Column(Integer, nullable=True)  # issued by the auth service
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), index=True)
    entity_id = Column(Integer)
    details = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index('ix_audit_logs_company_created', 'company_id', 'created_at'),
    )


class AIUsageLog(Base):
    """Per-call bookkeeping for AI features (including rule-based runs)."""
    __tablename__ = "ai_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    user_id = Column(Integer, nullable=True)
    feature = Column(enum_column_type(AIFeature, "aifeature"), nullable=False)
    model = Column(String(100), nullable=False)
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    estimated_cost = Column(Float, default=0.0)
    latency_ms = Column(Integer, default=0)
    success = Column(Boolean, default=True)
    error = Column(Text)
    extra_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============= PROCUREMENT MASTER DATA =============

class Vendor(Base):
    """Vendor/Supplier master data."""
    __tablename__ = "vendors"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    gstin = Column(String(20))
    category = Column(String(100))
    materials_supplied = Column(JSON, default=list)  # list of material keywords
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    company = relationship("Company", back_populates="vendors")
    quotes = relationship("Quote", back_populates="vendor")
    purchase_orders = relationship("PurchaseOrder", back_populates="vendor")


class Item(Base):
    """Catalogue item that can be sourced."""
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), index=True)
    category = Column(String(100), index=True)
    unit = Column(String(50))
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    company = relationship("Company", back_populates="items")
    price_history = relationship("PriceHistory", back_populates="item")


class RFQ(Base):
    """Request for Quotation."""
    __tablename__ = "rfqs"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    rfq_number = Column(String(50), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    status = Column(enum_column_type(RFQStatus, "rfqstatus"), default=RFQStatus.DRAFT)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    items = relationship("RFQItem", back_populates="rfq")
    quotes = relationship("Quote", back_populates="rfq")


class RFQItem(Base):
    """Line item requested in an RFQ."""
    __tablename__ = "rfq_items"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Float, default=1.0)

    rfq = relationship("RFQ", back_populates="items")
    item = relationship("Item")

    __table_args__ = (
        UniqueConstraint('rfq_id', 'item_id', name='uq_rfq_item'),
    )


class Quote(Base):
    """Vendor quote against an RFQ. landed_cost = base + GST + freight."""
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False)
    base_price = Column(Float, nullable=False, default=0.0)
    gst_amount = Column(Float, default=0.0)
    freight_cost = Column(Float, default=0.0)
    landed_cost = Column(Float, nullable=False)
    status = Column(enum_column_type(QuoteStatus, "quotestatus"), default=QuoteStatus.SUBMITTED)
    submitted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    rfq = relationship("RFQ", back_populates="quotes")
    vendor = relationship("Vendor", back_populates="quotes")

    @staticmethod
    def compute_landed_cost(base_price: float, gst_amount: float = 0.0, freight_cost: float = 0.0) -> float:
        return (base_price or 0.0) + (gst_amount or 0.0) + (freight_cost or 0.0)


class PurchaseOrder(Base):
    """Purchase order issued to a vendor."""
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=True)
    po_number = Column(String(50), unique=True, nullable=False)
    status = Column(enum_column_type(POStatus, "postatus"), default=POStatus.DRAFT)
    total_amount = Column(Float, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    vendor = relationship("Vendor", back_populates="purchase_orders")
    deliveries = relationship("Delivery", back_populates="purchase_order")


class Delivery(Base):
    """Goods receipt against a purchase order."""
    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)
    po_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=False)
    status = Column(enum_column_type(DeliveryStatus, "deliverystatus"), default=DeliveryStatus.PENDING)
    delivery_date = Column(DateTime(timezone=True))  # expected
    received_date = Column(DateTime(timezone=True))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    purchase_order = relationship("PurchaseOrder", back_populates="deliveries")


class PriceHistory(Base):
    """Observed price point for an item."""
    __tablename__ = "price_history"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=True)
    po_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=True)
    price = Column(Float, nullable=False)
    source = Column(enum_column_type(PriceSource, "pricesource"), default=PriceSource.MANUAL)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    item = relationship("Item", back_populates="price_history")
    vendor = relationship("Vendor")

    __table_args__ = (
        Index('ix_price_history_item_recorded', 'item_id', 'recorded_at'),
    )


# ============= INTELLIGENCE RECORDS =============

class QuoteExtraction(Base):
    """Structured data extracted from an uploaded vendor quote document."""
    __tablename__ = "quote_extractions"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=True)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(100))
    source_file_ref = Column(Text)
    status = Column(enum_column_type(ExtractionStatus, "extractionstatus"), default=ExtractionStatus.PENDING)
    raw_text = Column(Text)
    structured_data = Column(JSON)
    confidence = Column(Float, default=0.0)
    extraction_method = Column(enum_column_type(ExtractionMethod, "extractionmethod"), nullable=True)
    model_used = Column(String(100))
    processing_time_ms = Column(Integer)
    error = Column(Text)
    created_by = Column(Integer)
    approved_by = Column(Integer)
    approved_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)


class PriceAnomaly(Base):
    """Quote price that deviates from its peer/historical baseline."""
    __tablename__ = "price_anomalies"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=True)
    detected_price = Column(Float, nullable=False)
    expected_price = Column(Float, nullable=False)
    deviation_pct = Column(Float, nullable=False)
    severity = Column(enum_column_type(AnomalySeverity, "anomalyseverity"), nullable=False)
    explanation = Column(Text)
    historical_data = Column(JSON)
    acknowledged = Column(Boolean, default=False)
    acknowledged_by = Column(Integer)
    acknowledged_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    quote = relationship("Quote")


class PriceForecast(Base):
    """One forecast invocation for an item; superseded by newer rows."""
    __tablename__ = "price_forecasts"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    horizon_days = Column(Integer, nullable=False)
    forecast_date = Column(DateTime(timezone=True))
    current_price = Column(Float)
    predicted_price = Column(Float, nullable=False)
    confidence_low = Column(Float)
    confidence_high = Column(Float)
    confidence_pct = Column(Float)  # 30-95
    trend = Column(enum_column_type(PriceTrend, "pricetrend"), nullable=False)
    data_points_used = Column(Integer, default=0)
    explanation_factors = Column(JSON, default=list)
    valid_until = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    item = relationship("Item")


class VendorScore(Base):
    """Current performance score for a vendor (one row per vendor and company)."""
    __tablename__ = "vendor_scores"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    overall_score = Column(Float, default=0)
    tier = Column(enum_column_type(VendorTier, "vendortier"), nullable=False)
    delivery_score = Column(Float, default=0)
    price_score = Column(Float, default=0)
    quality_score = Column(Float, default=0)
    response_score = Column(Float, default=0)
    consistency_score = Column(Float, default=0)
    data_points = Column(Integer, default=0)
    explanation = Column(Text)
    calculated_at = Column(DateTime(timezone=True), default=utcnow)
    valid_until = Column(DateTime(timezone=True))

    vendor = relationship("Vendor")

    __table_args__ = (
        UniqueConstraint('vendor_id', 'company_id', name='uq_vendor_score_vendor_company'),
    )


class VendorPerformance(Base):
    """Raw counters behind the latest vendor score."""
    __tablename__ = "vendor_performance"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    total_orders = Column(Integer, default=0)
    completed_orders = Column(Integer, default=0)
    on_time_deliveries = Column(Integer, default=0)
    late_deliveries = Column(Integer, default=0)
    rejected_deliveries = Column(Integer, default=0)
    total_quotes = Column(Integer, default=0)
    accepted_quotes = Column(Integer, default=0)
    avg_response_hours = Column(Float, default=0)
    last_calculated_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint('vendor_id', 'company_id', name='uq_vendor_performance_vendor_company'),
    )


class VendorRecommendation(Base):
    """Ranked vendor suggestion, persisted for audit."""
    __tablename__ = "vendor_recommendations"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False)
    rank = Column(Integer, nullable=False)
    score = Column(Float, nullable=False)
    reason = Column(Text)
    factors = Column(JSON)
    urgency = Column(String(20))
    is_selected = Column(Boolean, default=False)
    selected_by = Column(Integer)
    selected_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    vendor = relationship("Vendor")


class NegotiationSession(Base):
    """Price negotiation with a vendor."""
    __tablename__ = "negotiation_sessions"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=True)
    current_price = Column(Float, nullable=False)
    target_price = Column(Float)
    ai_suggested_price = Column(Float)
    status = Column(enum_column_type(NegotiationStatus, "negotiationstatus"), default=NegotiationStatus.ACTIVE)
    created_by = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    closed_at = Column(DateTime(timezone=True))

    vendor = relationship("Vendor")
    messages = relationship(
        "NegotiationMessage",
        back_populates="session",
        order_by="[NegotiationMessage.created_at, NegotiationMessage.id]",
    )


class NegotiationMessage(Base):
    """Append-only message in a negotiation session."""
    __tablename__ = "negotiation_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("negotiation_sessions.id"), nullable=False, index=True)
    role = Column(enum_column_type(MessageRole, "messagerole"), nullable=False)
    content = Column(Text, nullable=False)
    is_ai_generated = Column(Boolean, default=False)
    is_edited = Column(Boolean, default=False)
    original_content = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    session = relationship("NegotiationSession", back_populates="messages")
