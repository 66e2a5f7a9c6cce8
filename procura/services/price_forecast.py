"""
Statistical price forecasting from an item's price history.

Least-squares line over the newest-first window, projected
ceil(horizon / 7) points past its end (points are treated as roughly
weekly). No model provider is involved.
"""
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from procura.core.config import settings
from procura.core.errors import NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import utcnow
from procura.db.models import AIFeature, Item, PriceForecast, PriceHistory, PriceSource, PriceTrend
from procura.services.ai_gateway import log_usage
from procura.services.audit import record_audit

logger = get_logger(__name__)


MIN_POINTS = 3
TREND_THRESHOLD = 0.05
BASE_CONFIDENCE = 0.7
MIN_CONFIDENCE = 0.3
MAX_CONFIDENCE = 0.95
INSUFFICIENT_DATA_FACTOR = "Insufficient historical data for accurate forecasting"


@dataclass
class ForecastComputation:
    current_price: float
    predicted_price: float
    trend: PriceTrend
    confidence: float
    volatility: float
    data_points: int
    factors: List[str] = field(default_factory=list)

    @property
    def confidence_low(self) -> float:
        return self.predicted_price * (1 - (1 - self.confidence) / 2)

    @property
    def confidence_high(self) -> float:
        return self.predicted_price * (1 + (1 - self.confidence) / 2)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


def calculate_forecast(prices: List[float], horizon_days: int) -> ForecastComputation:
    """
    Forecast from prices ordered newest first.

    Fewer than three points short-circuits to the latest price, STABLE and
    confidence 0.3.
    """
    n = len(prices)
    if n < MIN_POINTS:
        current = prices[0] if prices else 0.0
        return ForecastComputation(
            current_price=current,
            predicted_price=current,
            trend=PriceTrend.STABLE,
            confidence=MIN_CONFIDENCE,
            volatility=0.0,
            data_points=n,
            factors=[INSUFFICIENT_DATA_FACTOR],
        )

    latest = prices[0]
    avg = _mean(prices)

    sum_x = sum(range(n))
    sum_y = sum(prices)
    sum_xy = sum(i * p for i, p in enumerate(prices))
    sum_x2 = sum(i * i for i in range(n))
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n

    forecast_index = n + math.ceil(horizon_days / 7)
    predicted = max(0.0, intercept + slope * forecast_index)

    # Population standard deviation
    variance = sum((p - avg) ** 2 for p in prices) / n
    volatility = math.sqrt(variance) / avg if avg > 0 else 0.0

    change = (predicted - latest) / latest if latest > 0 else 0.0
    if change > TREND_THRESHOLD:
        trend = PriceTrend.UP
    elif change < -TREND_THRESHOLD:
        trend = PriceTrend.DOWN
    else:
        trend = PriceTrend.STABLE

    confidence = BASE_CONFIDENCE
    if n < 10:
        confidence -= 0.2
    if volatility > 0.2:
        confidence -= 0.1
    if volatility > 0.3:
        confidence -= 0.1
    if n > 50:
        confidence += 0.1
    confidence = round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence)), 4)

    factors = []
    if trend == PriceTrend.UP:
        factors.append("Upward price trend detected in historical data")
    elif trend == PriceTrend.DOWN:
        factors.append("Downward price trend detected in historical data")
    else:
        factors.append("Price has remained relatively stable")
    if volatility > 0.2:
        factors.append("High price volatility observed")

    recent_avg = _mean(prices[:5])
    older_avg = _mean(prices[-5:])
    if avg > 0 and abs(recent_avg - older_avg) / avg > 0.1:
        factors.append("Recent price movement differs from historical average")
    factors.append(f"Based on {n} historical data points")

    return ForecastComputation(
        current_price=latest,
        predicted_price=round(predicted, 2),
        trend=trend,
        confidence=confidence,
        volatility=volatility,
        data_points=n,
        factors=factors,
    )


def _get_item(db: Session, company_id: int, item_id: int) -> Item:
    item = db.query(Item).filter(Item.id == item_id, Item.company_id == company_id).first()
    if not item:
        raise NotFound("Item", item_id)
    return item


def record_price(
    db: Session,
    company_id: int,
    item_id: int,
    price: float,
    source: PriceSource = PriceSource.MANUAL,
    vendor_id: Optional[int] = None,
    quote_id: Optional[int] = None,
    po_id: Optional[int] = None,
    recorded_at: Optional[datetime] = None,
) -> PriceHistory:
    """Append a price observation for an item."""
    if price is None or price < 0:
        raise ValueError("price must be a non-negative number")
    _get_item(db, company_id, item_id)

    point = PriceHistory(
        company_id=company_id,
        item_id=item_id,
        vendor_id=vendor_id,
        quote_id=quote_id,
        po_id=po_id,
        price=price,
        source=source,
        recorded_at=recorded_at or utcnow(),
    )
    db.add(point)
    db.commit()
    db.refresh(point)
    return point


def forecast_item(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    item_id: int,
    horizon_days: int = 30,
) -> PriceForecast:
    """Compute and persist one forecast for an item."""
    if horizon_days < 1:
        raise ValueError("horizon_days must be at least 1")
    started = time.monotonic()
    _get_item(db, company_id, item_id)

    history = db.query(PriceHistory).filter(
        PriceHistory.company_id == company_id,
        PriceHistory.item_id == item_id,
    ).order_by(
        PriceHistory.recorded_at.desc(), PriceHistory.id.desc()
    ).limit(settings.FORECAST_HISTORY_LIMIT).all()

    result = calculate_forecast([h.price for h in history], horizon_days)
    forecast_date = utcnow() + timedelta(days=horizon_days)

    forecast = PriceForecast(
        company_id=company_id,
        item_id=item_id,
        horizon_days=horizon_days,
        forecast_date=forecast_date,
        current_price=result.current_price,
        predicted_price=result.predicted_price,
        confidence_low=round(result.confidence_low, 2),
        confidence_high=round(result.confidence_high, 2),
        confidence_pct=round(result.confidence * 100, 2),
        trend=result.trend,
        data_points_used=result.data_points,
        explanation_factors=result.factors,
        valid_until=forecast_date,
    )
    db.add(forecast)
    db.commit()
    db.refresh(forecast)

    log_usage(
        db, company_id, user_id, AIFeature.PRICE_FORECAST, "statistical",
        0, 0, int((time.monotonic() - started) * 1000), True,
        metadata={"item_id": item_id, "horizon_days": horizon_days},
    )
    record_audit(
        db, company_id, user_id, "PRICE_FORECAST_GENERATED", "PriceForecast", forecast.id,
        {
            "item_id": item_id,
            "current_price": result.current_price,
            "forecasted_price": result.predicted_price,
            "trend": result.trend.value,
        },
    )
    logger.info(
        f"Forecast for item {item_id}: {result.current_price:.2f} -> {result.predicted_price:.2f} "
        f"({result.trend.value}, confidence {result.confidence:.2f}, n={result.data_points})"
    )
    return forecast


def bulk_forecast(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    horizon_days: int = 30,
) -> List[PriceForecast]:
    """Forecast every item with price history. Failed items are logged and skipped."""
    item_ids = [
        row.item_id
        for row in db.query(PriceHistory.item_id).filter(
            PriceHistory.company_id == company_id,
        ).distinct().order_by(PriceHistory.item_id).all()
    ]

    forecasts = []
    for item_id in item_ids:
        try:
            forecasts.append(forecast_item(db, company_id, user_id, item_id, horizon_days))
        except Exception as e:
            logger.error(f"Failed to forecast item {item_id}: {e}", exc_info=True)
            db.rollback()
    logger.info(f"Bulk forecast produced {len(forecasts)}/{len(item_ids)} forecasts")
    return forecasts


def get_price_history(db: Session, company_id: int, item_id: int) -> List[PriceHistory]:
    _get_item(db, company_id, item_id)
    return db.query(PriceHistory).filter(
        PriceHistory.company_id == company_id,
        PriceHistory.item_id == item_id,
    ).order_by(
        PriceHistory.recorded_at.desc(), PriceHistory.id.desc()
    ).limit(settings.FORECAST_HISTORY_LIMIT).all()


def get_forecasts(db: Session, company_id: int, item_id: int, limit: int = 10) -> List[PriceForecast]:
    _get_item(db, company_id, item_id)
    return db.query(PriceForecast).filter(
        PriceForecast.company_id == company_id,
        PriceForecast.item_id == item_id,
    ).order_by(PriceForecast.created_at.desc(), PriceForecast.id.desc()).limit(limit).all()


def get_price_trends(db: Session, company_id: int) -> Dict[str, float]:
    """Trend counts over each item's latest forecast."""
    latest: Dict[int, PriceForecast] = {}
    rows = db.query(PriceForecast).filter(
        PriceForecast.company_id == company_id,
    ).order_by(PriceForecast.created_at.desc(), PriceForecast.id.desc()).all()
    for row in rows:
        latest.setdefault(row.item_id, row)

    forecasts = list(latest.values())
    return {
        "up_trend": sum(1 for f in forecasts if f.trend == PriceTrend.UP),
        "down_trend": sum(1 for f in forecasts if f.trend == PriceTrend.DOWN),
        "stable": sum(1 for f in forecasts if f.trend == PriceTrend.STABLE),
        "avg_confidence": (
            sum(f.confidence_pct or 0 for f in forecasts) / len(forecasts) if forecasts else 0
        ),
        "items_forecasted": len(forecasts),
    }
