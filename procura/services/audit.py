"""
Audit sink for the intelligence engines.
"""
from typing import Optional

from sqlalchemy.orm import Session

from procura.core.logging import get_logger, audit_logger
from procura.db.models import AuditLog

logger = get_logger(__name__)


def record_audit(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: Optional[dict] = None,
) -> None:
    """
    Write an audit row after the primary change has been committed.

    Runs in its own transaction and never raises: a failed audit write is
    logged and rolled back without touching the caller's result.
    """
    audit_logger.log(
        action=action,
        user_id=user_id,
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    try:
        db.add(AuditLog(
            company_id=company_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details or {},
        ))
        db.commit()
    except Exception as audit_err:
        logger.error(f"Failed to write audit log for {action}: {audit_err}")
        try:
            db.rollback()
        except Exception as rollback_err:
            logger.error(f"Rollback after audit failure also failed: {rollback_err}")
