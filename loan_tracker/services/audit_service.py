from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from loan_tracker.db import gateway
from loan_tracker.models.loan_models import AuditLog


LOGGER = logging.getLogger("loan_tracker.audit")


def log_audit(db: Session, entity_type: str, entity_id: str, action: str, details: str | None = None) -> None:
    """Append an audit row for a mutation that has already been committed.

    A failing audit write is logged and rolled back; it never undoes or hides
    the mutation it describes.
    """
    try:
        gateway.insert(
            db,
            AuditLog,
            [
                {
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "action": action,
                    "details": details,
                    "created_at": datetime.now(),
                }
            ],
        )
        gateway.commit(db)
    except Exception:
        db.rollback()
        LOGGER.exception("Audit write failed entity=%s id=%s action=%s", entity_type, entity_id, action)


def list_audit(db: Session, entity_type: str | None = None, entity_id: str | None = None, limit: int = 100) -> list[AuditLog]:
    criteria = []
    if entity_type:
        criteria.append(AuditLog.entity_type == entity_type)
    if entity_id:
        criteria.append(AuditLog.entity_id == str(entity_id))
    return gateway.query(db, AuditLog, *criteria, order_by=(AuditLog.id.desc(),), limit=max(1, limit))


def serialize_audit(row: AuditLog) -> dict:
    return {
        "auditID": row.id,
        "entityType": row.entity_type,
        "entityID": row.entity_id,
        "action": row.action,
        "details": row.details,
        "createdAt": row.created_at,
    }
