"""Approval decision engine for borrowing transactions.

Records step-1/step-2 approval decisions against the lab's approval
matrix and drives the borrowing state machine. Decisions for a single
transaction are serialized by a row lock plus unique constraints on
(transaction, approver) and (transaction, step).
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional, NamedTuple, Union
from uuid import UUID
import uuid

from sqlalchemy import and_, func, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from labflow.core.config import Settings, get_settings
from labflow.core.errors import (
    DuplicateDecision,
    InvalidTransition,
    MatrixNotFound,
    NotAuthorizedApprover,
    PersistenceError,
    StepAlreadyDecided,
    TransactionNotFound,
    ValidationError,
)
from labflow.core.rbac.roles import AppRole, STEP_APPROVER_ROLES, parse_role
from labflow.db.models import (
    ApprovalDecision,
    ApprovalMatrix,
    BorrowingTransaction,
    User,
    UserLabAssignment,
)

from .machine import BorrowingStateMachine
from .states import BorrowingStatus, BorrowingTransition, PENDING_APPROVAL_STATES

logger = logging.getLogger(__name__)

NOTE_MAX_LENGTH = 500
DEFAULT_REJECTION_REASON = "Rejected by approver"


class DecisionOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class DecisionStats(NamedTuple):
    """Aggregated decisions recorded so far on one transaction."""
    approved_count: int
    has_rejection: bool
    decided_user_ids: frozenset


class DecisionResult(NamedTuple):
    transaction_id: UUID
    step: int
    decision: DecisionOutcome
    status: BorrowingStatus
    admin_fallback: bool


def resolve_pending_step(
    status: Union[BorrowingStatus, str],
    approved_count: int,
    has_rejection: bool,
) -> Optional[int]:
    """
    Which approval step is awaiting a decision.

    Returns None when the transaction is past approval, was rejected, or
    already holds both approvals.
    """
    try:
        status = BorrowingStatus(status)
    except ValueError:
        return None
    if status not in PENDING_APPROVAL_STATES or has_rejection:
        return None
    if approved_count == 0:
        return 1
    if approved_count == 1:
        return 2
    return None


def admin_fallback_note(step: int, target_user_id: Optional[UUID], note: str) -> str:
    role = STEP_APPROVER_ROLES[step].value.upper()
    return f"[ADMIN FALLBACK {role} | target:{target_user_id}] {note}"


class ApprovalEngine:
    """
    Evaluates approval decisions and applies them.

    All checks run before any write; a failed check leaves the
    transaction untouched.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def load_stats(self, transaction_id: UUID) -> DecisionStats:
        """Count approvals and rejections already recorded."""
        row = self.db.query(
            func.count(case((ApprovalDecision.decision == DecisionOutcome.APPROVED.value, 1))),
            func.count(case((ApprovalDecision.decision == DecisionOutcome.REJECTED.value, 1))),
        ).filter(ApprovalDecision.transaction_id == transaction_id).one()

        deciders = self.db.query(ApprovalDecision.approver_user_id).filter(
            ApprovalDecision.transaction_id == transaction_id
        ).all()

        return DecisionStats(
            approved_count=int(row[0] or 0),
            has_rejection=int(row[1] or 0) > 0,
            decided_user_ids=frozenset(d[0] for d in deciders),
        )

    def record_decision(
        self,
        transaction_id: UUID,
        approver_user_id: UUID,
        decision: Union[DecisionOutcome, str],
        *,
        step: Optional[int] = None,
        note: Optional[str] = None,
    ) -> DecisionResult:
        """
        Record one approval decision and advance the transaction.

        Args:
            transaction_id: Borrowing transaction being decided
            approver_user_id: User recording the decision
            decision: approved or rejected
            step: Step the caller believes is pending (optional)
            note: Free-text note; mandatory for admin fallback

        Returns:
            DecisionResult with the new status

        Raises:
            TransactionNotFound, MatrixNotFound: Missing rows
            InvalidTransition: Nothing pending, or a later step was named
            StepAlreadyDecided: The named step was decided by someone else
            DuplicateDecision: This user already decided on the transaction
            NotAuthorizedApprover: User is not allowed to decide this step
            PersistenceError: Store failure; nothing was written
        """
        decision = DecisionOutcome(decision)
        note = (note or "").strip() or None
        if note and len(note) > NOTE_MAX_LENGTH:
            raise ValidationError(f"Note must be at most {NOTE_MAX_LENGTH} characters.")

        try:
            result = self._apply(transaction_id, approver_user_id, decision, step, note)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise self._map_integrity_error(exc) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to record decision on transaction %s", transaction_id)
            raise PersistenceError() from exc
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Transaction %s step %s %s by %s -> %s",
            transaction_id, result.step, decision.value, approver_user_id, result.status.value,
        )
        return result

    def _apply(
        self,
        transaction_id: UUID,
        approver_user_id: UUID,
        decision: DecisionOutcome,
        claimed_step: Optional[int],
        note: Optional[str],
    ) -> DecisionResult:
        tx = self.db.query(BorrowingTransaction).filter(
            BorrowingTransaction.id == transaction_id
        ).with_for_update().first()
        if not tx:
            raise TransactionNotFound()

        matrix = None
        if tx.approval_matrix_id:
            matrix = self.db.query(ApprovalMatrix).filter(
                ApprovalMatrix.id == tx.approval_matrix_id
            ).first()
        if not matrix or not matrix.is_active or not matrix.is_complete:
            raise MatrixNotFound()

        stats = self.load_stats(tx.id)
        pending_step = resolve_pending_step(tx.status, stats.approved_count, stats.has_rejection)
        if pending_step is None:
            raise InvalidTransition(f"Transaction {tx.code} has no approval step pending.", tx.status)

        if claimed_step is not None:
            if claimed_step < pending_step:
                raise StepAlreadyDecided(f"Step {claimed_step} has already been decided.")
            if claimed_step > pending_step:
                raise InvalidTransition(f"Step {claimed_step} is not pending yet.", tx.status)

        if approver_user_id in stats.decided_user_ids:
            raise DuplicateDecision()

        approver = self.db.query(User).filter(
            and_(User.id == approver_user_id, User.is_active.is_(True))
        ).first()
        if not approver:
            raise NotAuthorizedApprover("Approver account not found or inactive.")

        target_user_id = matrix.approver_for_step(pending_step)
        admin_fallback = self._authorize(tx, approver, pending_step, target_user_id, note)

        stored_note = note
        if admin_fallback:
            stored_note = admin_fallback_note(pending_step, target_user_id, note)

        if decision == DecisionOutcome.REJECTED:
            transition = BorrowingTransition.REJECT
        elif pending_step == 1:
            transition = BorrowingTransition.APPROVE_STEP1
        else:
            transition = BorrowingTransition.APPROVE_STEP2

        # Validate the edge before writing anything
        machine = BorrowingStateMachine(tx.id, tx.status, actor_role=approver.role)
        new_status = machine.transition(
            transition,
            user_id=approver.id,
            metadata={"step": pending_step, "admin_fallback": admin_fallback},
        )

        now = datetime.utcnow()
        self.db.add(ApprovalDecision(
            id=uuid.uuid4(),
            transaction_id=tx.id,
            approver_user_id=approver.id,
            decision=decision.value,
            step=pending_step,
            note=stored_note,
            decided_at=now,
        ))
        # Surface constraint violations before the status update
        self.db.flush()

        tx.status = new_status.value
        tx.updated_at = now
        if transition == BorrowingTransition.APPROVE_STEP2:
            tx.approved_at = now
        elif transition == BorrowingTransition.REJECT:
            tx.rejection_reason = stored_note or DEFAULT_REJECTION_REASON
        self.db.flush()

        return DecisionResult(
            transaction_id=tx.id,
            step=pending_step,
            decision=decision,
            status=new_status,
            admin_fallback=admin_fallback,
        )

    def _authorize(
        self,
        tx: BorrowingTransaction,
        approver: User,
        step: int,
        target_user_id: Optional[UUID],
        note: Optional[str],
    ) -> bool:
        """Return True when the decision is an admin fallback."""
        if approver.id == tx.requester_user_id:
            raise NotAuthorizedApprover("Requesters cannot decide on their own borrowing.")

        role = parse_role(approver.role)
        if role == AppRole.ADMIN:
            if approver.id == target_user_id:
                return False
            if not self.settings.allow_admin_fallback:
                raise NotAuthorizedApprover()
            if not note:
                raise NotAuthorizedApprover("Admin fallback requires a note explaining the decision.")
            return True

        if target_user_id is None or approver.id != target_user_id:
            raise NotAuthorizedApprover()
        if role != STEP_APPROVER_ROLES[step]:
            raise NotAuthorizedApprover()

        assigned = self.db.query(UserLabAssignment).filter(
            and_(
                UserLabAssignment.user_id == approver.id,
                UserLabAssignment.lab_id == tx.lab_id,
            )
        ).first()
        if not assigned:
            raise NotAuthorizedApprover("Approver is not assigned to this lab.")
        return False

    @staticmethod
    def _map_integrity_error(exc: IntegrityError) -> Exception:
        text = str(getattr(exc, "orig", exc))
        if "uq_borrowing_approvals_tx_step" in text or "borrowing_approvals.step" in text:
            return StepAlreadyDecided()
        if "uq_borrowing_approvals_tx_approver" in text or "borrowing_approvals.approver_user_id" in text:
            return DuplicateDecision()
        logger.error("Unexpected integrity error recording decision: %s", text)
        return PersistenceError()
