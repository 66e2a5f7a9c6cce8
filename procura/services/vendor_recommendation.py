"""
Vendor recommendation ranking for a sourcing request.

final score = (overall score * 0.5 + relevance * 0.5) * urgency multiplier

Vendors are visited in ascending id order and sorted stably, so equal
scores keep vendor id order.
"""
import time
from collections import defaultdict
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from procura.core.config import settings
from procura.core.errors import NotFound
from procura.core.logging import get_logger
from procura.core.timeutils import utcnow
from procura.db.models import AIFeature, Item, Quote, RFQ, RFQItem, Vendor, VendorRecommendation
from procura.services.ai_gateway import log_usage
from procura.services.audit import record_audit
from procura.services.vendor_scoring import calculate_vendor_score, find_vendor_score

logger = get_logger(__name__)


URGENCY_LEVELS = ("low", "medium", "high")

RELEVANCE_SAME_ITEM = 100
RELEVANCE_SAME_CATEGORY = 70
RELEVANCE_OTHER = 30

_NEUTRAL_SCORE = {
    "overall_score": 50.0,
    "delivery_score": 50.0,
    "price_score": 50.0,
    "quality_score": 50.0,
    "response_score": 50.0,
}


def urgency_multiplier(urgency: str, scores: Dict[str, float]) -> float:
    if urgency == "high":
        return (scores["response_score"] + scores["delivery_score"]) / 200
    if urgency == "low":
        return scores["price_score"] / 100
    return 1.0


def build_reason(
    relevant_quote_count: int,
    scores: Dict[str, float],
    urgency: str,
    materials_match: bool,
) -> str:
    reasons = []
    if relevant_quote_count > 0:
        reasons.append(f"Previously quoted for {relevant_quote_count} similar items")
    if scores["delivery_score"] >= 90:
        reasons.append("Excellent delivery record")
    if scores["price_score"] >= 80:
        reasons.append("Competitive pricing")
    if scores["quality_score"] >= 95:
        reasons.append("High quality standards")
    if urgency == "high" and scores["response_score"] >= 80:
        reasons.append("Fast response time")
    if materials_match:
        reasons.append("Specializes in required materials")
    return ". ".join(reasons) if reasons else "Available vendor"


def _vendor_scores(db: Session, company_id: int, vendor_id: int) -> Dict[str, float]:
    """Stored score, else a fresh calculation, else neutral 50s."""
    score = find_vendor_score(db, company_id, vendor_id)
    if score is None:
        try:
            score = calculate_vendor_score(db, company_id, None, vendor_id)
        except Exception as e:
            logger.warning(f"Could not score vendor {vendor_id} for recommendation, using neutral scores: {e}")
            db.rollback()
            return dict(_NEUTRAL_SCORE)
    return {
        "overall_score": score.overall_score,
        "delivery_score": score.delivery_score,
        "price_score": score.price_score,
        "quality_score": score.quality_score,
        "response_score": score.response_score,
    }


def _quoted_rfq_items(db: Session, company_id: int, vendor_ids: List[int]) -> Dict[int, Dict[int, Set[int]]]:
    """vendor_id -> quote_id -> item ids on the quoted RFQ."""
    rows = db.query(Quote.vendor_id, Quote.id, RFQItem.item_id).join(
        RFQ, Quote.rfq_id == RFQ.id
    ).join(
        RFQItem, RFQItem.rfq_id == RFQ.id
    ).filter(
        RFQ.company_id == company_id,
        Quote.vendor_id.in_(vendor_ids),
    ).all()

    quoted: Dict[int, Dict[int, Set[int]]] = defaultdict(lambda: defaultdict(set))
    for vendor_id, quote_id, item_id in rows:
        quoted[vendor_id][quote_id].add(item_id)
    return quoted


def get_recommendations(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    item_ids: List[int],
    quantity: Optional[float] = None,
    urgency: str = "medium",
) -> List[VendorRecommendation]:
    """
    Rank active vendors for the requested items.

    Returns:
        The persisted top recommendations, rank 1 first
    """
    started = time.monotonic()
    urgency = (urgency or "medium").lower()
    if urgency not in URGENCY_LEVELS:
        raise ValueError(f"urgency must be one of {', '.join(URGENCY_LEVELS)}")
    if not item_ids:
        raise ValueError("At least one item id is required")

    items = db.query(Item).filter(Item.id.in_(item_ids), Item.company_id == company_id).all()
    if not items:
        raise NotFound("Item", item_ids)
    valid_ids = {i.id for i in items}
    primary_item_id = next(i for i in item_ids if i in valid_ids)
    requested = set(item_ids) & valid_ids
    categories = {i.category for i in items if i.category}

    vendors = db.query(Vendor).filter(
        Vendor.company_id == company_id,
        Vendor.is_active == True,
    ).order_by(Vendor.id).all()
    vendor_info = [(v.id, v.name, list(v.materials_supplied or [])) for v in vendors]
    quoted = _quoted_rfq_items(db, company_id, [v[0] for v in vendor_info]) if vendor_info else {}

    quoted_item_ids = {i for by_quote in quoted.values() for ids in by_quote.values() for i in ids}
    item_categories = {
        i.id: i.category
        for i in db.query(Item).filter(Item.id.in_(quoted_item_ids)).all()
    } if quoted_item_ids else {}
    item_names = [i.name.lower() for i in items]

    candidates = []
    for vendor_id, vendor_name, materials in vendor_info:
        by_quote = quoted.get(vendor_id, {})
        relevant_quotes = [q for q, ids in by_quote.items() if ids & requested]
        if relevant_quotes:
            relevance = RELEVANCE_SAME_ITEM
        elif any(item_categories.get(i) in categories for ids in by_quote.values() for i in ids):
            relevance = RELEVANCE_SAME_CATEGORY
        else:
            relevance = RELEVANCE_OTHER

        scores = _vendor_scores(db, company_id, vendor_id)
        final_score = (scores["overall_score"] * 0.5 + relevance * 0.5) * urgency_multiplier(urgency, scores)
        materials_match = any(
            m and m.lower() in name for m in materials for name in item_names
        )

        candidates.append({
            "vendor_id": vendor_id,
            "vendor_name": vendor_name,
            "score": final_score,
            "reason": build_reason(len(relevant_quotes), scores, urgency, materials_match),
            "factors": {
                "price_competitiveness": scores["price_score"],
                "delivery_reliability": scores["delivery_score"],
                "quality_record": scores["quality_score"],
                "response_time": scores["response_score"],
                "relevance": relevance,
            },
        })

    # sorted() is stable: ties keep ascending vendor id order
    ranked = sorted(candidates, key=lambda c: c["score"], reverse=True)
    top = ranked[:settings.RECOMMENDATION_LIMIT]

    records = []
    for rank, candidate in enumerate(top, start=1):
        record = VendorRecommendation(
            company_id=company_id,
            item_id=primary_item_id,
            vendor_id=candidate["vendor_id"],
            rank=rank,
            score=candidate["score"],
            reason=candidate["reason"],
            factors=candidate["factors"],
            urgency=urgency,
            is_selected=False,
        )
        db.add(record)
        records.append(record)
    db.commit()
    for record in records:
        db.refresh(record)

    log_usage(
        db, company_id, user_id, AIFeature.VENDOR_RECOMMENDATION, "rule-based",
        0, 0, int((time.monotonic() - started) * 1000), True,
        metadata={"item_count": len(item_ids), "vendor_count": len(candidates)},
    )
    record_audit(
        db, company_id, user_id, "VENDOR_RECOMMENDATIONS_GENERATED", "VendorRecommendation",
        records[0].id if records else None,
        {
            "item_ids": list(item_ids),
            "quantity": quantity,
            "urgency": urgency,
            "recommendation_count": len(records),
            "top_vendor": top[0]["vendor_name"] if top else None,
        },
    )
    logger.info(f"Ranked {len(candidates)} vendors for items {list(item_ids)} (urgency={urgency})")
    return records


def mark_recommendation_selected(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    recommendation_id: int,
) -> VendorRecommendation:
    """Set is_selected once; later calls return the record unchanged."""
    rec = db.query(VendorRecommendation).filter(
        VendorRecommendation.id == recommendation_id,
        VendorRecommendation.company_id == company_id,
    ).first()
    if not rec:
        raise NotFound("VendorRecommendation", recommendation_id)
    if rec.is_selected:
        return rec

    rec.is_selected = True
    rec.selected_by = user_id
    rec.selected_at = utcnow()
    db.commit()
    db.refresh(rec)

    record_audit(
        db, company_id, user_id, "VENDOR_RECOMMENDATION_SELECTED", "VendorRecommendation",
        recommendation_id, {"vendor_id": rec.vendor_id},
    )
    return rec


def list_recent_recommendations(db: Session, company_id: int, limit: int = 50) -> List[VendorRecommendation]:
    return db.query(VendorRecommendation).filter(
        VendorRecommendation.company_id == company_id,
    ).order_by(
        VendorRecommendation.created_at.desc(), VendorRecommendation.id.desc()
    ).limit(limit).all()
