"""Tests for overdue detection."""

from datetime import datetime, timedelta

import pytest

from labflow.core.approval.overdue import OverdueDetector, days_overdue, is_overdue
from labflow.db.models import BorrowingTransaction

from tests.factories import create_lab, create_transaction, create_user

NOW = datetime(2025, 3, 10, 12, 0, 0)


class TestIsOverdue:

    def test_one_second_past_due(self):
        due = NOW - timedelta(seconds=1)
        assert is_overdue("active", due, NOW)
        assert days_overdue(due, NOW) == 1

    def test_returned_is_never_overdue(self):
        assert not is_overdue("returned", NOW - timedelta(days=30), NOW)

    @pytest.mark.parametrize("status", ["submitted", "pending_approval", "approved_waiting_handover", "rejected"])
    def test_only_open_borrowings(self, status):
        assert not is_overdue(status, NOW - timedelta(days=3), NOW)

    def test_partially_returned_counts(self):
        assert is_overdue("partially_returned", NOW - timedelta(hours=2), NOW)

    def test_due_exactly_now_is_not_overdue(self):
        assert not is_overdue("active", NOW, NOW)

    def test_no_due_date(self):
        assert not is_overdue("active", None, NOW)


class TestDaysOverdue:

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(hours=23, minutes=59), 1),
        (timedelta(days=1), 1),
        (timedelta(days=1, hours=23), 1),
        (timedelta(days=2), 2),
        (timedelta(days=10, seconds=5), 10),
    ])
    def test_floor_with_minimum_one(self, delta, expected):
        assert days_overdue(NOW - delta, NOW) == expected


class TestOverdueDetector:

    @pytest.fixture
    def rows(self, db_session):
        lab_a = create_lab(db_session)
        lab_b = create_lab(db_session)
        alice = create_user(db_session, role="requester", name="Alice")
        bob = create_user(db_session, role="requester", name="Bob")

        late_a = create_transaction(db_session, lab=lab_a, requester=alice, status="active",
                                    due_date=NOW - timedelta(days=3))
        later_b = create_transaction(db_session, lab=lab_b, requester=bob, status="partially_returned",
                                     due_date=NOW - timedelta(days=5))
        create_transaction(db_session, lab=lab_a, requester=alice, status="returned",
                           due_date=NOW - timedelta(days=9))
        create_transaction(db_session, lab=lab_a, requester=bob, status="active",
                           due_date=NOW + timedelta(days=1))
        db_session.commit()
        return lab_a, lab_b, alice, bob, late_a, later_b

    def test_lists_most_overdue_first(self, db_session, rows):
        _, _, _, _, late_a, later_b = rows
        alerts = OverdueDetector(db_session).list_overdue(now=NOW)
        assert [a.transaction_id for a in alerts] == [later_b.id, late_a.id]
        assert alerts[0].days_overdue == 5
        assert alerts[0].requester_name == "Bob"

    def test_lab_scope(self, db_session, rows):
        lab_a, _, _, _, late_a, _ = rows
        alerts = OverdueDetector(db_session).list_overdue(lab_ids=[lab_a.id], now=NOW)
        assert [a.transaction_id for a in alerts] == [late_a.id]

    def test_empty_lab_scope_returns_nothing(self, db_session, rows):
        assert OverdueDetector(db_session).list_overdue(lab_ids=[], now=NOW) == []

    def test_requester_scope(self, db_session, rows):
        _, _, alice, _, late_a, _ = rows
        alerts = OverdueDetector(db_session).list_overdue(requester_user_id=alice.id, now=NOW)
        assert [a.transaction_id for a in alerts] == [late_a.id]

    def test_status_is_not_rewritten(self, db_session, rows):
        OverdueDetector(db_session).list_overdue(now=NOW)
        statuses = {tx.status for tx in db_session.query(BorrowingTransaction).all()}
        assert "overdue" not in statuses
