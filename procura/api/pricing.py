"""
Price intelligence API routes: anomaly detection and price forecasting.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procura.api.deps import get_ai
from procura.core.rbac import require_operator, require_viewer
from procura.db.models import AnomalySeverity, PriceSource, PriceTrend
from procura.db.session import get_db
from procura.services.ai_gateway import AICapability
from procura.services.price_anomaly import (
    acknowledge_anomaly, detect_anomalies, get_anomalies_for_quote, get_recent_anomalies,
)
from procura.services.price_forecast import (
    bulk_forecast, forecast_item, get_forecasts, get_price_history, get_price_trends, record_price,
)

router = APIRouter(prefix="/api/ai", tags=["Price Intelligence"])


# ============= SCHEMAS =============

class AnomalyResponse(BaseModel):
    id: int
    quote_id: int
    item_id: Optional[int]
    detected_price: float
    expected_price: float
    deviation_pct: float
    severity: AnomalySeverity
    explanation: Optional[str]
    historical_data: Optional[Dict[str, Any]]
    acknowledged: bool
    acknowledged_by: Optional[int]
    acknowledged_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class NamedRef(BaseModel):
    id: int
    name: str


class RecentAnomalyResponse(BaseModel):
    anomaly: AnomalyResponse
    vendor: Optional[NamedRef]
    item: Optional[NamedRef]


class PriceHistoryCreate(BaseModel):
    item_id: int
    price: float = Field(..., ge=0)
    source: PriceSource = PriceSource.MANUAL
    vendor_id: Optional[int] = None
    quote_id: Optional[int] = None
    po_id: Optional[int] = None
    recorded_at: Optional[datetime] = None


class PriceHistoryResponse(BaseModel):
    id: int
    item_id: int
    vendor_id: Optional[int]
    quote_id: Optional[int]
    po_id: Optional[int]
    price: float
    source: PriceSource
    recorded_at: datetime

    class Config:
        from_attributes = True


class ForecastResponse(BaseModel):
    id: int
    item_id: int
    horizon_days: int
    forecast_date: Optional[datetime]
    current_price: Optional[float]
    predicted_price: float
    confidence_low: Optional[float]
    confidence_high: Optional[float]
    confidence_pct: Optional[float]
    trend: PriceTrend
    data_points_used: int
    explanation_factors: List[str] = []
    valid_until: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class TrendSummary(BaseModel):
    up_trend: int
    down_trend: int
    stable: int
    avg_confidence: float
    items_forecasted: int


# ============= ANOMALY ENDPOINTS =============

@router.post("/anomaly/detect/{quote_id}", response_model=List[AnomalyResponse])
def detect(
    quote_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    ai: AICapability = Depends(get_ai),
):
    """
    Check a quote's landed cost against its peers and price history.

    Returns an empty list when the price is within 10% of expected.
    """
    return detect_anomalies(db, ai, user_context["company_id"], user_context["user_id"], quote_id)


@router.get("/anomaly/recent", response_model=List[RecentAnomalyResponse])
def recent(
    limit: int = Query(20, ge=1, le=100),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_recent_anomalies(db, user_context["company_id"], limit=limit)


@router.get("/anomaly/quote/{quote_id}", response_model=List[AnomalyResponse])
def for_quote(
    quote_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_anomalies_for_quote(db, user_context["company_id"], quote_id)


@router.post("/anomaly/{anomaly_id}/acknowledge", response_model=AnomalyResponse)
def acknowledge(
    anomaly_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    return acknowledge_anomaly(db, user_context["company_id"], user_context["user_id"], anomaly_id)


# ============= FORECAST ENDPOINTS =============

@router.post("/price-history", response_model=PriceHistoryResponse)
def add_price_point(
    request: PriceHistoryCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    """Record a price observation used by forecasting and anomaly baselines."""
    return record_price(
        db, user_context["company_id"], request.item_id, request.price,
        source=request.source,
        vendor_id=request.vendor_id,
        quote_id=request.quote_id,
        po_id=request.po_id,
        recorded_at=request.recorded_at,
    )


@router.post("/forecast/bulk", response_model=List[ForecastResponse])
def forecast_all(
    horizon_days: int = Query(30, ge=1, le=365),
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    return bulk_forecast(db, user_context["company_id"], user_context["user_id"], horizon_days)


@router.get("/forecast/trends", response_model=TrendSummary)
def trends(
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_price_trends(db, user_context["company_id"])


@router.post("/forecast/{item_id}", response_model=ForecastResponse)
def forecast(
    item_id: int,
    horizon_days: int = Query(30, ge=1, le=365),
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    return forecast_item(db, user_context["company_id"], user_context["user_id"], item_id, horizon_days)


@router.get("/forecast/{item_id}/history", response_model=List[PriceHistoryResponse])
def history(
    item_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_price_history(db, user_context["company_id"], item_id)


@router.get("/forecast/{item_id}", response_model=List[ForecastResponse])
def list_forecasts(
    item_id: int,
    limit: int = Query(10, ge=1, le=100),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_forecasts(db, user_context["company_id"], item_id, limit=limit)
