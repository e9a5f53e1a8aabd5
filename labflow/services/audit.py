"""Security audit sink.

Appends one SecurityAuditLog row per mutating action. Writing the audit
entry must never fail the action it describes, so store errors are
logged and dropped.
"""

import logging
from typing import Optional, Dict, Any
from uuid import UUID

from sqlalchemy.orm import Session

from labflow.core.config import get_settings
from labflow.db.models import SecurityAuditLog, AuditOutcome

logger = logging.getLogger(__name__)


def write_security_audit_log(
    db: Session,
    *,
    category: str,
    action: str,
    outcome: AuditOutcome,
    user_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    identifier: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[SecurityAuditLog]:
    """Write an audit entry in its own commit. Returns None on failure."""
    if not get_settings().audit_enabled:
        return None

    entry = SecurityAuditLog.create_entry(
        category,
        action,
        outcome,
        user_id=user_id,
        actor_role=actor_role,
        target_type=target_type,
        target_id=target_id,
        identifier=identifier,
        metadata=metadata,
    )
    try:
        db.add(entry)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to write audit log %s.%s (%s)", category, action, entry.outcome)
        return None
    return entry
