"""
Vendor performance scoring.

Five sub-scores in [0, 100] computed from a vendor's most recent quotes and
purchase orders, combined with fixed weights into an overall score and an
A/B/C tier. The explanation is templated; no model is involved.
"""
import math
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procura.core.config import settings
from procura.core.errors import NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import ensure_utc, utcnow
from procura.db.models import (
    AIFeature, Delivery, DeliveryStatus, POStatus, PurchaseOrder, Quote, QuoteStatus, RFQ,
    Vendor, VendorPerformance, VendorScore, VendorTier,
)
from procura.services.ai_gateway import log_usage
from procura.services.audit import record_audit

logger = get_logger(__name__)


WEIGHTS: Dict[str, float] = {
    "delivery": 0.30,
    "price": 0.25,
    "quality": 0.25,
    "response": 0.10,
    "consistency": 0.10,
}

RECENT_LIMIT = 50
DELIVERY_GRACE = timedelta(days=2)
DEFAULT_SUB_SCORE = 50.0
DEFAULT_RESPONSE_DAYS = 3.0
RESPONSE_PENALTY_PER_DAY = 15.0
COMPLETED_PO_STATUSES = (POStatus.COMPLETED, POStatus.DELIVERED)


@dataclass
class QuoteObservation:
    status: QuoteStatus
    landed_cost: float
    response_days: Optional[float] = None


@dataclass
class DeliveryObservation:
    status: DeliveryStatus
    expected_date: Optional[object] = None
    received_date: Optional[object] = None

    @property
    def on_time(self) -> bool:
        if self.status != DeliveryStatus.DELIVERED:
            return False
        if self.expected_date is None or self.received_date is None:
            return False
        return ensure_utc(self.received_date) <= ensure_utc(self.expected_date) + DELIVERY_GRACE


@dataclass
class ScoreBreakdown:
    delivery_score: float
    price_score: float
    quality_score: float
    response_score: float
    consistency_score: float
    overall_score: float
    tier: VendorTier
    data_points: int
    explanation: str
    counters: Dict[str, float] = field(default_factory=dict)


def compute_tier(overall_score: float) -> VendorTier:
    if overall_score >= 80:
        return VendorTier.A
    if overall_score >= 60:
        return VendorTier.B
    return VendorTier.C


def weighted_overall(delivery: float, price: float, quality: float, response: float, consistency: float) -> float:
    return (
        delivery * WEIGHTS["delivery"]
        + price * WEIGHTS["price"]
        + quality * WEIGHTS["quality"]
        + response * WEIGHTS["response"]
        + consistency * WEIGHTS["consistency"]
    )


def consistency_from_prices(prices: List[float]) -> float:
    """100 minus the coefficient of variation (percent) of quoted prices."""
    if len(prices) <= 1:
        return 100.0
    mean = sum(prices) / len(prices)
    if mean <= 0:
        return 100.0
    std_dev = math.sqrt(sum((p - mean) ** 2 for p in prices) / len(prices))
    return max(0.0, 100.0 - std_dev / mean * 100)


def score_observations(
    quotes: List[QuoteObservation],
    deliveries: List[DeliveryObservation],
    completed_orders: int,
) -> ScoreBreakdown:
    """Pure scoring over already-fetched observations."""
    total_deliveries = len(deliveries)
    on_time = sum(1 for d in deliveries if d.on_time)
    rejected = sum(1 for d in deliveries if d.status == DeliveryStatus.REJECTED)

    delivery_score = on_time / total_deliveries * 100 if total_deliveries else DEFAULT_SUB_SCORE
    quality_score = (
        (total_deliveries - rejected) / total_deliveries * 100 if total_deliveries else DEFAULT_SUB_SCORE
    )

    total_quotes = len(quotes)
    approved = sum(1 for q in quotes if q.status == QuoteStatus.APPROVED)
    price_score = approved / total_quotes * 100 if total_quotes else DEFAULT_SUB_SCORE

    response_days = [q.response_days for q in quotes if q.response_days is not None]
    avg_response_days = sum(response_days) / len(response_days) if response_days else DEFAULT_RESPONSE_DAYS
    response_score = max(0.0, min(100.0, 100.0 - avg_response_days * RESPONSE_PENALTY_PER_DAY))

    consistency_score = consistency_from_prices([q.landed_cost for q in quotes])

    overall = weighted_overall(delivery_score, price_score, quality_score, response_score, consistency_score)
    data_points = total_quotes + completed_orders

    breakdown = ScoreBreakdown(
        delivery_score=delivery_score,
        price_score=price_score,
        quality_score=quality_score,
        response_score=response_score,
        consistency_score=consistency_score,
        overall_score=overall,
        tier=compute_tier(overall),
        data_points=data_points,
        explanation="",
        counters={
            "completed_orders": completed_orders,
            "total_deliveries": total_deliveries,
            "on_time_deliveries": on_time,
            "late_deliveries": total_deliveries - on_time - rejected,
            "rejected_deliveries": rejected,
            "total_quotes": total_quotes,
            "accepted_quotes": approved,
            "avg_response_days": avg_response_days,
        },
    )
    breakdown.explanation = build_explanation(breakdown)
    return breakdown


def build_explanation(b: ScoreBreakdown) -> str:
    parts = [f"Score based on {b.data_points} data points."]
    if b.data_points < 3:
        parts.append("Limited data available - score may not be fully representative.")

    if b.delivery_score >= 90:
        parts.append("Excellent delivery track record.")
    elif b.delivery_score < 70:
        parts.append("Delivery reliability needs improvement.")

    if b.price_score >= 80:
        parts.append("Highly competitive pricing.")
    elif b.price_score < 50:
        parts.append("Quotes often not selected - may need price review.")

    if b.quality_score >= 95:
        parts.append("Outstanding quality record.")
    elif b.quality_score < 85:
        parts.append("Some quality issues reported.")

    if b.response_score >= 80:
        parts.append("Responds quickly to RFQs.")
    elif b.response_score < 40:
        parts.append("Slow to respond to RFQs.")

    if b.consistency_score < 70:
        parts.append("Quoted prices vary widely between RFQs.")

    return " ".join(parts)


# ============= PERSISTENCE =============

def _get_vendor(db: Session, company_id: int, vendor_id: int) -> Vendor:
    vendor = db.query(Vendor).filter(Vendor.id == vendor_id, Vendor.company_id == company_id).first()
    if not vendor:
        raise NotFound("Vendor", vendor_id)
    return vendor


def _collect_observations(db: Session, company_id: int, vendor_id: int):
    quote_rows = db.query(Quote, RFQ).join(RFQ, Quote.rfq_id == RFQ.id).filter(
        Quote.vendor_id == vendor_id,
        RFQ.company_id == company_id,
    ).order_by(Quote.created_at.desc(), Quote.id.desc()).limit(RECENT_LIMIT).all()

    quotes = []
    for quote, rfq in quote_rows:
        responded_at = ensure_utc(quote.submitted_at or quote.created_at)
        asked_at = ensure_utc(rfq.created_at)
        response_days = None
        if responded_at and asked_at:
            response_days = (responded_at - asked_at).total_seconds() / 86400
        quotes.append(QuoteObservation(
            status=quote.status,
            landed_cost=quote.landed_cost or 0.0,
            response_days=response_days,
        ))

    orders = db.query(PurchaseOrder).filter(
        PurchaseOrder.vendor_id == vendor_id,
        PurchaseOrder.company_id == company_id,
    ).order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc()).limit(RECENT_LIMIT).all()
    completed = [po for po in orders if po.status in COMPLETED_PO_STATUSES]

    deliveries = []
    if completed:
        rows = db.query(Delivery).filter(
            Delivery.po_id.in_([po.id for po in completed])
        ).order_by(Delivery.id).all()
        deliveries = [
            DeliveryObservation(status=d.status, expected_date=d.delivery_date, received_date=d.received_date)
            for d in rows
        ]

    return quotes, deliveries, len(completed)


def _apply_score(db: Session, company_id: int, vendor_id: int, b: ScoreBreakdown) -> VendorScore:
    now = utcnow()
    score = db.query(VendorScore).filter(
        VendorScore.vendor_id == vendor_id,
        VendorScore.company_id == company_id,
    ).first()
    if score is None:
        score = VendorScore(vendor_id=vendor_id, company_id=company_id)
        db.add(score)

    score.overall_score = b.overall_score
    score.tier = b.tier
    score.delivery_score = b.delivery_score
    score.price_score = b.price_score
    score.quality_score = b.quality_score
    score.response_score = b.response_score
    score.consistency_score = b.consistency_score
    score.data_points = b.data_points
    score.explanation = b.explanation
    score.calculated_at = now
    score.valid_until = now + timedelta(days=settings.VENDOR_SCORE_VALIDITY_DAYS)

    performance = db.query(VendorPerformance).filter(
        VendorPerformance.vendor_id == vendor_id,
        VendorPerformance.company_id == company_id,
    ).first()
    if performance is None:
        performance = VendorPerformance(vendor_id=vendor_id, company_id=company_id)
        db.add(performance)

    c = b.counters
    performance.total_orders = c["completed_orders"]
    performance.completed_orders = c["completed_orders"]
    performance.on_time_deliveries = c["on_time_deliveries"]
    performance.late_deliveries = c["late_deliveries"]
    performance.rejected_deliveries = c["rejected_deliveries"]
    performance.total_quotes = c["total_quotes"]
    performance.accepted_quotes = c["accepted_quotes"]
    performance.avg_response_hours = c["avg_response_days"] * 24
    performance.last_calculated_at = now

    db.commit()
    return score


def calculate_vendor_score(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    vendor_id: int,
) -> VendorScore:
    """Score a vendor and upsert its VendorScore (last write wins)."""
    started = time.monotonic()
    _get_vendor(db, company_id, vendor_id)

    quotes, deliveries, completed_orders = _collect_observations(db, company_id, vendor_id)
    breakdown = score_observations(quotes, deliveries, completed_orders)

    try:
        score = _apply_score(db, company_id, vendor_id, breakdown)
    except IntegrityError:
        # A concurrent caller inserted the row first; overwrite it
        db.rollback()
        logger.warning(f"Concurrent score insert for vendor {vendor_id}, retrying as update")
        score = _apply_score(db, company_id, vendor_id, breakdown)
    db.refresh(score)

    if user_id is not None:
        record_audit(
            db, company_id, user_id, "VENDOR_SCORE_CALCULATED", "VendorScore", score.id,
            {
                "vendor_id": vendor_id,
                "overall_score": round(breakdown.overall_score, 2),
                "tier": breakdown.tier.value,
                "data_points": breakdown.data_points,
            },
        )
        log_usage(
            db, company_id, user_id, AIFeature.VENDOR_SCORING, "rule-based",
            0, 0, int((time.monotonic() - started) * 1000), True,
            metadata={"vendor_id": vendor_id, "overall_score": round(breakdown.overall_score, 2)},
        )

    logger.info(
        f"Vendor {vendor_id} scored {breakdown.overall_score:.1f} (tier {breakdown.tier.value}, "
        f"{breakdown.data_points} data points)"
    )
    return score


def get_vendor_score(db: Session, company_id: int, vendor_id: int) -> VendorScore:
    score = db.query(VendorScore).filter(
        VendorScore.vendor_id == vendor_id,
        VendorScore.company_id == company_id,
    ).first()
    if not score:
        raise NotFound("VendorScore", vendor_id)
    return score


def find_vendor_score(db: Session, company_id: int, vendor_id: int) -> Optional[VendorScore]:
    return db.query(VendorScore).filter(
        VendorScore.vendor_id == vendor_id,
        VendorScore.company_id == company_id,
    ).first()


def list_vendor_scores(db: Session, company_id: int) -> List[VendorScore]:
    return db.query(VendorScore).filter(
        VendorScore.company_id == company_id,
    ).order_by(VendorScore.overall_score.desc(), VendorScore.vendor_id).all()


def recalculate_all_scores(db: Session, company_id: int, user_id: Optional[int]) -> List[VendorScore]:
    """
    Rescore every active vendor sequentially.

    Not atomic: a vendor that fails is logged and skipped, and the returned
    list holds only the scores actually written.
    """
    vendors = db.query(Vendor).filter(
        Vendor.company_id == company_id,
        Vendor.is_active == True,
    ).order_by(Vendor.id).all()
    vendor_ids = [v.id for v in vendors]

    results = []
    for vendor_id in vendor_ids:
        try:
            results.append(calculate_vendor_score(db, company_id, user_id, vendor_id))
        except Exception as e:
            logger.error(f"Failed to calculate score for vendor {vendor_id}: {e}", exc_info=True)
            db.rollback()
    logger.info(f"Recalculated {len(results)}/{len(vendor_ids)} vendor scores for company {company_id}")
    return results
