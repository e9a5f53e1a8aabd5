"""Notification summary for the dashboard bell.

Handles:
- Role-scoped counts of actionable borrowing work
- Prioritized item list (danger first, then larger counts)
- Per-user "last read" watermark

Counts are recomputed from live data on every request; nothing is
queued or delivered from here.
"""

import logging
from datetime import datetime
from typing import Optional, Callable, Dict, List, NamedTuple
from uuid import UUID

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from labflow.core.approval.engine import DecisionOutcome, resolve_pending_step
from labflow.core.approval.overdue import overdue_clause
from labflow.core.approval.states import (
    BorrowingStatus,
    OPEN_BORROWING_STATES,
    PENDING_APPROVAL_STATES,
    status_values,
)
from labflow.core.errors import PersistenceError
from labflow.core.rbac.roles import AppRole, parse_role
from labflow.db.models import (
    ApprovalDecision,
    ApprovalMatrix,
    BorrowingTransaction,
    UserLabAssignment,
    UserNotificationState,
)

logger = logging.getLogger(__name__)

# Lower sorts first
TONE_PRIORITY = {
    "danger": 0,
    "warning": 1,
    "info": 2,
    "success": 3,
}


class NotificationItem(NamedTuple):
    id: str
    title: str
    description: str
    count: int
    href: str
    tone: str


class NotificationSummary(NamedTuple):
    items: List[NotificationItem]
    total_unread: int
    generated_at: datetime


class NotificationQueries:
    """Count queries shared by the role strategies."""

    def __init__(self, db: Session, now: Optional[datetime] = None, base_path: str = "/dashboard"):
        self.db = db
        self.now = now or datetime.utcnow()
        self.base_path = base_path.rstrip("/")

    def href(self, query: str) -> str:
        return f"{self.base_path}/borrowing?{query}"

    def assigned_lab_ids(self, user_id: UUID) -> list[UUID]:
        return [
            row[0] for row in self.db.query(UserLabAssignment.lab_id).filter(
                UserLabAssignment.user_id == user_id
            ).all()
        ]

    def count(self, *criteria) -> int:
        return self.db.query(func.count(BorrowingTransaction.id)).filter(*criteria).scalar() or 0

    def pending(self):
        return BorrowingTransaction.status.in_(status_values(PENDING_APPROVAL_STATES))

    def waiting_handover(self):
        return BorrowingTransaction.status == BorrowingStatus.APPROVED_WAITING_HANDOVER.value

    def open_borrowing(self):
        return BorrowingTransaction.status.in_(status_values(OPEN_BORROWING_STATES))

    def overdue(self):
        return overdue_clause(self.now)

    def pending_step_count(self, user_id: UUID, step: int) -> int:
        """
        Transactions whose pending step is `step` and whose matrix names
        this user as that step's approver, excluding ones the user already
        decided on.
        """
        approver_column = (
            ApprovalMatrix.step1_approver_user_id if step == 1 else ApprovalMatrix.step2_approver_user_id
        )
        candidates = self.db.query(BorrowingTransaction.id, BorrowingTransaction.status).join(
            ApprovalMatrix, ApprovalMatrix.id == BorrowingTransaction.approval_matrix_id
        ).filter(
            and_(self.pending(), approver_column == user_id)
        ).all()
        if not candidates:
            return 0

        stats = {tx_id: [0, False, False] for tx_id, _ in candidates}
        decisions = self.db.query(
            ApprovalDecision.transaction_id,
            ApprovalDecision.approver_user_id,
            ApprovalDecision.decision,
        ).filter(ApprovalDecision.transaction_id.in_(list(stats))).all()

        for tx_id, approver_id, decision in decisions:
            entry = stats[tx_id]
            if decision == DecisionOutcome.APPROVED.value:
                entry[0] += 1
            elif decision == DecisionOutcome.REJECTED.value:
                entry[1] = True
            if approver_id == user_id:
                entry[2] = True

        total = 0
        for tx_id, status in candidates:
            approved_count, has_rejection, decided_by_me = stats[tx_id]
            if decided_by_me:
                continue
            if resolve_pending_step(status, approved_count, has_rejection) == step:
                total += 1
        return total


RoleStrategy = Callable[[NotificationQueries, UUID, List[UUID]], List[NotificationItem]]


def instructor_items(queries: NotificationQueries, user_id: UUID, lab_ids: List[UUID]) -> List[NotificationItem]:
    return [
        NotificationItem(
            id="borrowing-approve-step1",
            title="Step 1 Approval",
            description="Requests waiting for instructor approval.",
            count=queries.pending_step_count(user_id, 1),
            href=queries.href("scope=waiting_me&status=pending"),
            tone="warning",
        ),
    ]


def lab_staff_items(queries: NotificationQueries, user_id: UUID, lab_ids: List[UUID]) -> List[NotificationItem]:
    if lab_ids:
        in_scope = BorrowingTransaction.lab_id.in_(lab_ids)
        handover = queries.count(queries.waiting_handover(), in_scope)
        overdue = queries.count(queries.overdue(), in_scope)
    else:
        handover = overdue = 0

    return [
        NotificationItem(
            id="borrowing-approve-step2",
            title="Step 2 Approval",
            description="Requests waiting for lab staff approval.",
            count=queries.pending_step_count(user_id, 2),
            href=queries.href("scope=waiting_me&status=pending"),
            tone="warning",
        ),
        NotificationItem(
            id="borrowing-handover",
            title="Awaiting Handover",
            description="Approved transactions ready for handover.",
            count=handover,
            href=queries.href("status=approved_waiting_handover"),
            tone="info",
        ),
        NotificationItem(
            id="borrowing-overdue",
            title="Overdue Returns",
            description="Transactions past their due date that need follow-up.",
            count=overdue,
            href=queries.href("status=overdue"),
            tone="danger",
        ),
    ]


def admin_items(queries: NotificationQueries, user_id: UUID, lab_ids: List[UUID]) -> List[NotificationItem]:
    return [
        NotificationItem(
            id="admin-pending-approval",
            title="Pending Approval",
            description="Requests still waiting for an approval decision.",
            count=queries.count(queries.pending()),
            href=queries.href("status=pending"),
            tone="warning",
        ),
        NotificationItem(
            id="admin-handover",
            title="Awaiting Handover",
            description="Approved transactions waiting for handover.",
            count=queries.count(queries.waiting_handover()),
            href=queries.href("status=approved_waiting_handover"),
            tone="info",
        ),
        NotificationItem(
            id="admin-overdue",
            title="Overdue Returns",
            description="Overdue transactions that need follow-up.",
            count=queries.count(queries.overdue()),
            href=queries.href("status=overdue"),
            tone="danger",
        ),
    ]


def requester_items(queries: NotificationQueries, user_id: UUID, lab_ids: List[UUID]) -> List[NotificationItem]:
    mine = BorrowingTransaction.requester_user_id == user_id
    return [
        NotificationItem(
            id="requester-pending",
            title="Requests Awaiting Approval",
            description="Your requests are being processed by approvers.",
            count=queries.count(mine, queries.pending()),
            href=queries.href("scope=mine&status=pending"),
            tone="warning",
        ),
        NotificationItem(
            id="requester-active",
            title="Active Borrowings",
            description="Your borrowings that are still running.",
            count=queries.count(mine, queries.open_borrowing()),
            href=queries.href("scope=mine&status=active"),
            tone="info",
        ),
        NotificationItem(
            id="requester-overdue",
            title="Overdue Borrowings",
            description="Return overdue tools as soon as possible.",
            count=queries.count(mine, queries.overdue()),
            href=queries.href("scope=mine&status=overdue"),
            tone="danger",
        ),
    ]


ROLE_STRATEGIES: Dict[AppRole, RoleStrategy] = {
    AppRole.INSTRUCTOR: instructor_items,
    AppRole.LAB_STAFF: lab_staff_items,
    AppRole.ADMIN: admin_items,
    AppRole.REQUESTER: requester_items,
}

# Strategies that scope counts by lab assignment
LAB_SCOPED_ROLES = {AppRole.LAB_STAFF}


def sort_items(items: List[NotificationItem]) -> List[NotificationItem]:
    """Drop empty items, then order by tone priority and descending count."""
    return sorted(
        (item for item in items if item.count > 0),
        key=lambda item: (TONE_PRIORITY.get(item.tone, len(TONE_PRIORITY)), -item.count),
    )


class NotificationAggregator:
    """Builds notification summaries and stores read watermarks."""

    def __init__(self, db: Session, base_path: str = "/dashboard"):
        self.db = db
        self.base_path = base_path

    def summarize(self, role, user_id: UUID, now: Optional[datetime] = None) -> NotificationSummary:
        """Summary of outstanding work for a user in the given role."""
        now = now or datetime.utcnow()
        app_role = parse_role(role)
        strategy = ROLE_STRATEGIES.get(app_role)
        if strategy is None:
            logger.debug("No notification strategy for role %r", role)
            return NotificationSummary(items=[], total_unread=0, generated_at=now)

        queries = NotificationQueries(self.db, now=now, base_path=self.base_path)
        lab_ids = queries.assigned_lab_ids(user_id) if app_role in LAB_SCOPED_ROLES else []
        items = sort_items(strategy(queries, user_id, lab_ids))

        return NotificationSummary(
            items=items,
            total_unread=sum(item.count for item in items),
            generated_at=now,
        )

    def get_last_read_at(self, user_id: UUID) -> Optional[datetime]:
        state = self.db.query(UserNotificationState).filter(
            UserNotificationState.user_id == user_id
        ).first()
        return state.borrowing_last_read_at if state else None

    def _locked_state(self, user_id: UUID) -> Optional[UserNotificationState]:
        return self.db.query(UserNotificationState).filter(
            UserNotificationState.user_id == user_id
        ).with_for_update().first()

    def mark_read(self, user_id: UUID, now: Optional[datetime] = None) -> datetime:
        """
        Record that the user has seen the current summary.

        Only moves the watermark; outstanding counts are unaffected.
        """
        now = now or datetime.utcnow()
        try:
            state = self._locked_state(user_id)
            if state is None:
                try:
                    state = UserNotificationState(user_id=user_id)
                    self.db.add(state)
                    self.db.flush()
                except IntegrityError:
                    # Another request created the row first
                    self.db.rollback()
                    logger.info("Concurrent notification state insert for user %s, updating instead", user_id)
                    state = self._locked_state(user_id)
                    if state is None:
                        raise
            state.borrowing_last_read_at = now
            state.updated_at = now
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to mark notifications read for user %s", user_id)
            raise PersistenceError("Failed to update notification status.") from exc

        return now
