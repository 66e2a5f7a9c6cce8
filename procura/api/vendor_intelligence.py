"""
Vendor scoring and recommendation API routes.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procura.core.rbac import require_operator, require_viewer
from procura.db.models import VendorTier
from procura.db.session import get_db
from procura.services.vendor_recommendation import (
    get_recommendations, list_recent_recommendations, mark_recommendation_selected,
)
from procura.services.vendor_scoring import (
    calculate_vendor_score, get_vendor_score, list_vendor_scores, recalculate_all_scores,
)

router = APIRouter(prefix="/api/ai", tags=["Vendor Intelligence"])


# ============= SCHEMAS =============

class VendorScoreResponse(BaseModel):
    id: int
    vendor_id: int
    overall_score: float
    tier: VendorTier
    delivery_score: float
    price_score: float
    quality_score: float
    response_score: float
    consistency_score: float
    data_points: int
    explanation: Optional[str]
    calculated_at: datetime
    valid_until: Optional[datetime]

    class Config:
        from_attributes = True


class RecommendationRequest(BaseModel):
    item_ids: List[int] = Field(..., min_length=1)
    quantity: Optional[float] = Field(None, gt=0)
    urgency: str = "medium"


class RecommendationResponse(BaseModel):
    id: int
    item_id: int
    vendor_id: int
    rank: int
    score: float
    reason: Optional[str]
    factors: Optional[Dict[str, Any]]
    urgency: Optional[str]
    is_selected: bool
    selected_by: Optional[int]
    selected_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


# ============= SCORING ENDPOINTS =============

@router.get("/vendor-scores", response_model=List[VendorScoreResponse])
def list_scores(
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return list_vendor_scores(db, user_context["company_id"])


@router.post("/vendor-score/recalculate-all", response_model=List[VendorScoreResponse])
def recalculate_all(
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    """Rescore every active vendor. Vendors that fail are skipped."""
    return recalculate_all_scores(db, user_context["company_id"], user_context["user_id"])


@router.post("/vendor-score/{vendor_id}", response_model=VendorScoreResponse)
def calculate(
    vendor_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    return calculate_vendor_score(db, user_context["company_id"], user_context["user_id"], vendor_id)


@router.get("/vendor-score/{vendor_id}", response_model=VendorScoreResponse)
def get_score(
    vendor_id: int,
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return get_vendor_score(db, user_context["company_id"], vendor_id)


# ============= RECOMMENDATION ENDPOINTS =============

@router.post("/vendor-recommendation", response_model=List[RecommendationResponse])
def recommend(
    request: RecommendationRequest,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    """
    Rank active vendors for a set of items.

    Urgency shifts the weighting: high favors delivery and response,
    low favors price.
    """
    return get_recommendations(
        db, user_context["company_id"], user_context["user_id"],
        request.item_ids, quantity=request.quantity, urgency=request.urgency,
    )


@router.get("/vendor-recommendations", response_model=List[RecommendationResponse])
def recent_recommendations(
    limit: int = Query(50, ge=1, le=200),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
):
    return list_recent_recommendations(db, user_context["company_id"], limit=limit)


@router.post("/vendor-recommendation/{recommendation_id}/select", response_model=RecommendationResponse)
def select(
    recommendation_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
):
    return mark_recommendation_selected(
        db, user_context["company_id"], user_context["user_id"], recommendation_id
    )
