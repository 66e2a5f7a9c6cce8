"""
AI provider status and usage reporting.
"""
from typing import Dict, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from procura.api.deps import get_ai
from procura.core.rbac import require_viewer
from procura.db.session import get_db
from procura.services.ai_gateway import AICapability, get_status, get_usage_stats

router = APIRouter(prefix="/api/ai", tags=["AI Status"])


class StatusResponse(BaseModel):
    available: bool
    provider: str
    text_model: Optional[str]
    vision_model: Optional[str]
    mode: str
    message: str


class FeatureUsage(BaseModel):
    count: int
    cost: float
    tokens: int


class UsageResponse(BaseModel):
    total_requests: int
    total_cost: float
    total_tokens: int
    by_feature: Dict[str, FeatureUsage]
    success_rate: float
    provider: str


@router.get("/status", response_model=StatusResponse)
def status(ai: AICapability = Depends(get_ai)):
    return get_status(ai)


@router.get("/usage", response_model=UsageResponse)
def usage(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user_context: dict = Depends(require_viewer),
    db: Session = Depends(get_db),
    ai: AICapability = Depends(get_ai),
):
    return get_usage_stats(db, user_context["company_id"], ai, start_date=start_date, end_date=end_date)
