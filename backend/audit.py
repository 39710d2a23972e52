"""Persistent business audit trail.

Rows are added to the caller's session and committed with whatever
transaction the caller is running, so an aborted workflow leaves no
audit entry behind.
"""
import json
import logging
from typing import Any, Optional

from sqlmodel import Session, select

from models import AuditLog, User

logger = logging.getLogger(__name__)


def record(
    session: Session,
    actor: Optional[User],
    action: str,
    details: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=actor.id if actor else None,
        action=action,
        details=json.dumps(details, default=str) if details is not None else None,
        ip_address=ip_address,
    )
    session.add(entry)
    logger.debug("audit %s by %s: %s", action, actor.username if actor else "-", details)
    return entry

def list_entries(session: Session, action_prefix: Optional[str] = None, limit: int = 200):
    stmt = select(AuditLog)
    if action_prefix:
        stmt = stmt.where(AuditLog.action.startswith(action_prefix))
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    return session.exec(stmt).all()
