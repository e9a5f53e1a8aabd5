"""Borrowing approval workflow.

Two-stage approval routed by a per-lab matrix, followed by handover and
returns. Overdue is derived from the due date, never stored.
"""

from .states import (
    BorrowingStatus,
    BorrowingTransition,
    TransitionRule,
    TRANSITION_RULES,
    VALID_TRANSITIONS,
    TERMINAL_STATES,
    PENDING_APPROVAL_STATES,
    OPEN_BORROWING_STATES,
    can_transition,
    get_transition_rule,
    get_target_state,
)
from .machine import BorrowingStateMachine
from .engine import ApprovalEngine, DecisionOutcome, DecisionResult, DecisionStats, resolve_pending_step
from .matrix import ApprovalMatrixRegistry
from .overdue import OverdueDetector, OverdueAlert, is_overdue, days_overdue, overdue_clause
from .service import BorrowingService, ConsumableRequest, ReturnLine, parse_due_date, generate_borrowing_code

__all__ = [
    "BorrowingStatus",
    "BorrowingTransition",
    "TransitionRule",
    "TRANSITION_RULES",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "PENDING_APPROVAL_STATES",
    "OPEN_BORROWING_STATES",
    "can_transition",
    "get_transition_rule",
    "get_target_state",
    "BorrowingStateMachine",
    "ApprovalEngine",
    "DecisionOutcome",
    "DecisionResult",
    "DecisionStats",
    "resolve_pending_step",
    "ApprovalMatrixRegistry",
    "OverdueDetector",
    "OverdueAlert",
    "is_overdue",
    "days_overdue",
    "overdue_clause",
    "BorrowingService",
    "ConsumableRequest",
    "ReturnLine",
    "parse_due_date",
    "generate_borrowing_code",
]
