"""Security audit log model.

Write-only from the application's point of view: the workflow appends one
entry per mutating action and never reads it back.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import Column, String, DateTime, JSON, Uuid

from labflow.db.base import Base


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"


class SecurityAuditLog(Base):
    __tablename__ = "security_audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Action details
    category = Column(String(50), nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    outcome = Column(String(20), nullable=False)

    # Actor information
    user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    actor_role = Column(String(30), nullable=True)

    # Target
    target_type = Column(String(50), nullable=True)
    target_id = Column(String(64), nullable=True, index=True)
    identifier = Column(String(255), nullable=True)

    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<SecurityAuditLog {self.category}.{self.action} [{self.outcome}]>"

    @classmethod
    def create_entry(
        cls,
        category: str,
        action: str,
        outcome: AuditOutcome,
        *,
        user_id: Optional[uuid.UUID] = None,
        actor_role: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[Any] = None,
        identifier: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "SecurityAuditLog":
        """Factory method to create a new audit log entry."""
        return cls(
            category=category,
            action=action,
            outcome=outcome.value if isinstance(outcome, AuditOutcome) else outcome,
            user_id=user_id,
            actor_role=actor_role,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            identifier=identifier,
            details=metadata,
        )
