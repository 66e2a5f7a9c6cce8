"""
Price anomaly detection for vendor quotes.

Expected price priority:
1. mean landed cost of the other quotes on the same RFQ
2. mean price history of the item (single-item RFQs only, recent window)
3. the quote's own price (deviation 0%)
"""
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from procura.core.config import settings
from procura.core.errors import AIProviderError, NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import utcnow
from procura.db.models import (
    AIFeature, AnomalySeverity, Item, PriceAnomaly, PriceHistory, Quote, RFQItem, Vendor,
)
from procura.services.ai_gateway import AICapability, estimate_tokens, log_usage
from procura.services.audit import record_audit

logger = get_logger(__name__)


HIGH_THRESHOLD_PCT = 10.0
EXTREME_THRESHOLD_PCT = 25.0

SOURCE_PEER_QUOTES = "other_quotes"
SOURCE_HISTORY = "historical"
SOURCE_SELF = "current"


def compute_deviation(detected_price: float, expected_price: float) -> float:
    """Percentage above expected. A non-positive baseline yields 0."""
    if not expected_price or expected_price <= 0:
        return 0.0
    return (detected_price - expected_price) / expected_price * 100


def classify_deviation(deviation_pct: float) -> AnomalySeverity:
    # Rounded so that 10.0 computed as 10.000000000002 still counts as NORMAL
    deviation = round(deviation_pct, 6)
    if deviation <= HIGH_THRESHOLD_PCT:
        return AnomalySeverity.NORMAL
    if deviation <= EXTREME_THRESHOLD_PCT:
        return AnomalySeverity.HIGH
    return AnomalySeverity.EXTREMELY_HIGH


def template_explanation(severity: AnomalySeverity, deviation_pct: float, data_source: str) -> str:
    if severity == AnomalySeverity.NORMAL:
        return f"Price is within normal range ({deviation_pct:.1f}% deviation from expected)."
    if severity == AnomalySeverity.HIGH:
        basis = "other vendor quotes" if data_source == SOURCE_PEER_QUOTES else "historical data"
        return (
            f"Price is {deviation_pct:.1f}% higher than expected based on {basis}. "
            "Consider negotiating or verifying with vendor."
        )
    return (
        f"Price is {deviation_pct:.1f}% higher than expected - this is a significant deviation. "
        "Strongly recommend verification before approval."
    )


def _get_quote(db: Session, company_id: int, quote_id: int) -> Quote:
    quote = db.query(Quote).join(Vendor, Quote.vendor_id == Vendor.id).filter(
        Quote.id == quote_id,
        Vendor.company_id == company_id,
    ).first()
    if not quote:
        raise NotFound("Quote", quote_id)
    return quote


def detect_anomalies(
    db: Session,
    ai: AICapability,
    company_id: int,
    user_id: Optional[int],
    quote_id: int,
) -> List[PriceAnomaly]:
    """
    Compare a quote against its baseline and persist an anomaly when it is
    more than 10% above expected.

    Returns:
        The persisted anomalies (empty when the price is NORMAL)
    """
    started = time.monotonic()
    quote = _get_quote(db, company_id, quote_id)

    peer_quotes = db.query(Quote).filter(
        Quote.rfq_id == quote.rfq_id,
        Quote.id != quote.id,
    ).order_by(Quote.id).all()
    peer_prices = [q.landed_cost for q in peer_quotes]

    item_ids = [
        row.item_id
        for row in db.query(RFQItem).filter(RFQItem.rfq_id == quote.rfq_id).order_by(RFQItem.id).all()
    ]
    history = []
    if item_ids:
        since = utcnow() - timedelta(days=settings.ANOMALY_HISTORY_DAYS)
        history = db.query(PriceHistory).filter(
            PriceHistory.company_id == company_id,
            PriceHistory.item_id.in_(item_ids),
            PriceHistory.recorded_at >= since,
        ).order_by(PriceHistory.recorded_at.desc()).all()

    expected_price = quote.landed_cost
    data_source = SOURCE_SELF
    if peer_prices:
        expected_price = sum(peer_prices) / len(peer_prices)
        data_source = SOURCE_PEER_QUOTES
    elif len(item_ids) == 1:
        item_prices = [h.price for h in history if h.item_id == item_ids[0]]
        if item_prices:
            expected_price = sum(item_prices) / len(item_prices)
            data_source = SOURCE_HISTORY

    deviation = compute_deviation(quote.landed_cost, expected_price)
    severity = classify_deviation(deviation)
    logger.info(
        f"Quote {quote_id}: landed {quote.landed_cost:.2f} vs expected {expected_price:.2f} "
        f"({deviation:.1f}%, {severity.value}, source={data_source})"
    )

    if severity == AnomalySeverity.NORMAL:
        return []

    explanation = template_explanation(severity, deviation, data_source)
    if ai.is_available():
        prompt = _build_explanation_prompt(quote, expected_price, deviation, peer_quotes, history[:10])
        try:
            generated = ai.generate_text(prompt).strip()
            if generated:
                explanation = generated
            log_usage(
                db, company_id, user_id, AIFeature.PRICE_ANOMALY, ai.text_model,
                estimate_tokens(prompt), estimate_tokens(generated),
                int((time.monotonic() - started) * 1000), True,
                metadata={"quote_id": quote_id, "deviation": round(deviation, 2)},
            )
        except AIProviderError as e:
            logger.warning(f"AI anomaly explanation failed, keeping rule-based text: {e}")
            log_usage(
                db, company_id, user_id, AIFeature.PRICE_ANOMALY, ai.text_model,
                estimate_tokens(prompt), 0, int((time.monotonic() - started) * 1000), False,
                error=str(e), metadata={"quote_id": quote_id, "deviation": round(deviation, 2)},
            )

    anomaly = PriceAnomaly(
        company_id=company_id,
        quote_id=quote.id,
        item_id=item_ids[0] if len(item_ids) == 1 else None,
        detected_price=quote.landed_cost,
        expected_price=expected_price,
        deviation_pct=deviation,
        severity=severity,
        explanation=explanation,
        historical_data={
            "data_source": data_source,
            "other_quotes": peer_prices,
            "historical_count": len(history),
        },
        acknowledged=False,
    )
    db.add(anomaly)
    db.commit()
    db.refresh(anomaly)

    record_audit(
        db, company_id, user_id, "PRICE_ANOMALY_DETECTED", "PriceAnomaly", anomaly.id,
        {"quote_id": quote_id, "severity": severity.value, "deviation": round(deviation, 2)},
    )
    return [anomaly]


def _build_explanation_prompt(
    quote: Quote,
    expected_price: float,
    deviation: float,
    peer_quotes: List[Quote],
    recent_history: List[PriceHistory],
) -> str:
    peers = "\n".join(
        f"- {q.vendor.name if q.vendor else f'Vendor {q.vendor_id}'}: ₹{q.landed_cost:,.2f}"
        for q in peer_quotes
    ) or "None"
    history = "\n".join(
        f"- ₹{h.price:,.2f} on {h.recorded_at.date().isoformat()}"
        for h in recent_history
    ) or "No historical data"
    vendor_name = quote.vendor.name if quote.vendor else f"Vendor {quote.vendor_id}"

    return f"""A procurement quote looks overpriced.

Quote:
- Vendor: {vendor_name}
- Landed cost: ₹{quote.landed_cost:,.2f}
- Expected price: ₹{expected_price:,.2f}
- Deviation: {deviation:.1f}%

Other quotes on the same RFQ:
{peers}

Recent price history:
{history}

In 2-3 plain sentences explain why the price stands out, what could legitimately
justify it, and what the buyer should do next. Do not use markdown."""


def acknowledge_anomaly(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    anomaly_id: int,
) -> PriceAnomaly:
    """One-way acknowledgement; acknowledging twice changes nothing."""
    anomaly = db.query(PriceAnomaly).filter(
        PriceAnomaly.id == anomaly_id,
        PriceAnomaly.company_id == company_id,
    ).first()
    if not anomaly:
        raise NotFound("PriceAnomaly", anomaly_id)
    if anomaly.acknowledged:
        return anomaly

    anomaly.acknowledged = True
    anomaly.acknowledged_by = user_id
    anomaly.acknowledged_at = utcnow()
    db.commit()
    db.refresh(anomaly)

    record_audit(
        db, company_id, user_id, "PRICE_ANOMALY_ACKNOWLEDGED", "PriceAnomaly", anomaly_id,
        {"quote_id": anomaly.quote_id},
    )
    return anomaly


def get_anomalies_for_quote(db: Session, company_id: int, quote_id: int) -> List[PriceAnomaly]:
    return db.query(PriceAnomaly).filter(
        PriceAnomaly.quote_id == quote_id,
        PriceAnomaly.company_id == company_id,
    ).order_by(PriceAnomaly.created_at.desc(), PriceAnomaly.id.desc()).all()


def get_recent_anomalies(db: Session, company_id: int, limit: int = 20) -> List[Dict[str, Any]]:
    """Most recent anomalies with vendor and item names attached."""
    anomalies = db.query(PriceAnomaly).filter(
        PriceAnomaly.company_id == company_id,
    ).order_by(PriceAnomaly.created_at.desc(), PriceAnomaly.id.desc()).limit(limit).all()

    results = []
    for anomaly in anomalies:
        vendor = anomaly.quote.vendor if anomaly.quote else None
        item = db.query(Item).filter(Item.id == anomaly.item_id).first() if anomaly.item_id else None
        results.append({
            "anomaly": anomaly,
            "vendor": {"id": vendor.id, "name": vendor.name} if vendor else None,
            "item": {"id": item.id, "name": item.name} if item else None,
        })
    return results
