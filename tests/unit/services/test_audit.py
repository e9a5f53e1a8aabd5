"""Tests for the security audit sink."""

from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from labflow.core.config import get_settings
from labflow.db.models import AuditOutcome, SecurityAuditLog
from labflow.services.audit import write_security_audit_log

from tests.factories import create_user


def test_writes_entry(db_session):
    admin = create_user(db_session, role="admin")
    db_session.commit()

    entry = write_security_audit_log(
        db_session,
        category="approval_matrix",
        action="save",
        outcome=AuditOutcome.SUCCESS,
        user_id=admin.id,
        actor_role="admin",
        target_type="lab",
        target_id=admin.id,
        metadata={"is_active": True},
    )

    assert entry is not None
    [row] = db_session.query(SecurityAuditLog).all()
    assert row.category == "approval_matrix"
    assert row.outcome == "success"
    assert row.details == {"is_active": True}


def test_store_failure_is_swallowed():
    db = MagicMock()
    db.commit.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))

    result = write_security_audit_log(
        db, category="borrowing", action="approve", outcome=AuditOutcome.FAILURE,
    )

    assert result is None
    db.rollback.assert_called_once()


def test_disabled(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "audit_enabled", False)
    result = write_security_audit_log(
        db_session, category="borrowing", action="approve", outcome=AuditOutcome.SUCCESS,
    )
    assert result is None
    assert db_session.query(SecurityAuditLog).count() == 0
