"""Overdue detection for open borrowings.

Overdue is never stored: a borrowing is overdue while it is open and its
due date has passed.
"""

import math
from datetime import datetime
from typing import Optional, Iterable, NamedTuple, Union
from uuid import UUID

from sqlalchemy import and_
from sqlalchemy.orm import Session

from labflow.db.models import BorrowingTransaction, User

from .states import BorrowingStatus, OPEN_BORROWING_STATES, status_values

SECONDS_PER_DAY = 86400


def is_overdue(
    status: Union[BorrowingStatus, str],
    due_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """True when the borrowing is open and past its due date."""
    if due_date is None:
        return False
    try:
        status = BorrowingStatus(status)
    except ValueError:
        return False
    now = now or datetime.utcnow()
    return status in OPEN_BORROWING_STATES and due_date < now


def days_overdue(due_date: datetime, now: Optional[datetime] = None) -> int:
    """Whole days past due, at least 1."""
    now = now or datetime.utcnow()
    seconds = (now - due_date).total_seconds()
    return max(1, math.floor(seconds / SECONDS_PER_DAY))


def overdue_clause(now: datetime):
    """SQL filter equivalent of is_overdue."""
    return and_(
        BorrowingTransaction.status.in_(status_values(OPEN_BORROWING_STATES)),
        BorrowingTransaction.due_date.isnot(None),
        BorrowingTransaction.due_date < now,
    )


class OverdueAlert(NamedTuple):
    transaction_id: UUID
    code: str
    lab_id: UUID
    requester_user_id: UUID
    requester_name: Optional[str]
    due_date: datetime
    days_overdue: int


class OverdueDetector:
    """Lists overdue borrowings for dashboards."""

    def __init__(self, db: Session):
        self.db = db

    def list_overdue(
        self,
        *,
        lab_ids: Optional[Iterable[UUID]] = None,
        requester_user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[OverdueAlert]:
        """
        Overdue borrowings, most overdue first.

        Args:
            lab_ids: Restrict to these labs (None means all labs)
            requester_user_id: Restrict to one requester
            now: Reference time, defaults to utcnow
            limit: Maximum number of alerts
        """
        now = now or datetime.utcnow()
        query = self.db.query(BorrowingTransaction, User.name).join(
            User, User.id == BorrowingTransaction.requester_user_id
        ).filter(overdue_clause(now))

        if lab_ids is not None:
            lab_ids = list(lab_ids)
            if not lab_ids:
                return []
            query = query.filter(BorrowingTransaction.lab_id.in_(lab_ids))
        if requester_user_id is not None:
            query = query.filter(BorrowingTransaction.requester_user_id == requester_user_id)

        rows = query.order_by(BorrowingTransaction.due_date.asc()).limit(limit).all()

        return [
            OverdueAlert(
                transaction_id=tx.id,
                code=tx.code,
                lab_id=tx.lab_id,
                requester_user_id=tx.requester_user_id,
                requester_name=requester_name,
                due_date=tx.due_date,
                days_overdue=days_overdue(tx.due_date, now),
            )
            for tx, requester_name in rows
        ]
