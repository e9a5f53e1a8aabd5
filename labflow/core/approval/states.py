"""Borrowing transaction states and transitions.

State Machine Diagram:

    ┌───────────┐
    │ SUBMITTED │ ← Initial state (request created)
    └─────┬─────┘
          │ approve_step1 (instructor)
    ┌─────▼────────────┐
    │ PENDING_APPROVAL │
    └─────┬────────────┘
          │ approve_step2 (lab staff)
    ┌─────▼─────────────────────┐
    │ APPROVED_WAITING_HANDOVER │
    └─────┬─────────────────────┘
          │ hand_over
    ┌─────▼────┐  return_partial  ┌────────────────────┐
    │  ACTIVE  │─────────────────►│ PARTIALLY_RETURNED │◄─┐ return_partial
    └─────┬────┘                  └─────────┬──────────┘──┘
          │ return_all                      │ return_all
    ┌─────▼────┐                            │
    │ RETURNED │◄───────────────────────────┘
    └──────────┘

SUBMITTED and PENDING_APPROVAL may also move to REJECTED (terminal).
Overdue is not a state: it is derived from due_date on open borrowings.
"""

from enum import Enum
from typing import Set, Dict, Optional, NamedTuple, FrozenSet

from labflow.core.rbac.roles import AppRole


class BorrowingStatus(str, Enum):
    """States in the borrowing workflow."""

    # Approval states
    SUBMITTED = "submitted"                                  # Awaiting step 1
    PENDING_APPROVAL = "pending_approval"                    # Step 1 done, awaiting step 2
    APPROVED_WAITING_HANDOVER = "approved_waiting_handover"  # Both steps approved

    # Borrowing states
    ACTIVE = "active"                                        # Assets handed over
    PARTIALLY_RETURNED = "partially_returned"                # Some tools back

    # Terminal states
    RETURNED = "returned"                                    # Every tool line returned
    REJECTED = "rejected"                                    # Rejected at step 1 or 2


class BorrowingTransition(str, Enum):
    """Actions that trigger state transitions."""

    APPROVE_STEP1 = "approve_step1"    # SUBMITTED → PENDING_APPROVAL
    APPROVE_STEP2 = "approve_step2"    # PENDING_APPROVAL → APPROVED_WAITING_HANDOVER
    REJECT = "reject"                  # SUBMITTED/PENDING_APPROVAL → REJECTED
    HAND_OVER = "hand_over"            # APPROVED_WAITING_HANDOVER → ACTIVE
    RETURN_PARTIAL = "return_partial"  # ACTIVE/PARTIALLY_RETURNED → PARTIALLY_RETURNED
    RETURN_ALL = "return_all"          # ACTIVE/PARTIALLY_RETURNED → RETURNED


class TransitionRule(NamedTuple):
    """Defines a valid state transition."""
    from_state: BorrowingStatus
    to_state: BorrowingStatus
    transition: BorrowingTransition
    actor_roles: Optional[FrozenSet[AppRole]] = None


_STEP1 = frozenset({AppRole.INSTRUCTOR, AppRole.ADMIN})
_STEP2 = frozenset({AppRole.LAB_STAFF, AppRole.ADMIN})
_OPERATORS = frozenset({AppRole.LAB_STAFF, AppRole.ADMIN})

S = BorrowingStatus
T = BorrowingTransition

# Define all valid transitions
TRANSITION_RULES: list[TransitionRule] = [
    # Two-stage approval
    TransitionRule(S.SUBMITTED, S.PENDING_APPROVAL, T.APPROVE_STEP1, _STEP1),
    TransitionRule(S.PENDING_APPROVAL, S.APPROVED_WAITING_HANDOVER, T.APPROVE_STEP2, _STEP2),
    TransitionRule(S.SUBMITTED, S.REJECTED, T.REJECT, _STEP1),
    TransitionRule(S.PENDING_APPROVAL, S.REJECTED, T.REJECT, _STEP2),

    # Handover
    TransitionRule(S.APPROVED_WAITING_HANDOVER, S.ACTIVE, T.HAND_OVER, _OPERATORS),

    # Returns
    TransitionRule(S.ACTIVE, S.PARTIALLY_RETURNED, T.RETURN_PARTIAL, _OPERATORS),
    TransitionRule(S.PARTIALLY_RETURNED, S.PARTIALLY_RETURNED, T.RETURN_PARTIAL, _OPERATORS),
    TransitionRule(S.ACTIVE, S.RETURNED, T.RETURN_ALL, _OPERATORS),
    TransitionRule(S.PARTIALLY_RETURNED, S.RETURNED, T.RETURN_ALL, _OPERATORS),
]

# Build lookup tables for efficient access
VALID_TRANSITIONS: Dict[BorrowingStatus, Set[BorrowingTransition]] = {}
TRANSITION_TARGETS: Dict[tuple[BorrowingStatus, BorrowingTransition], TransitionRule] = {}

for rule in TRANSITION_RULES:
    VALID_TRANSITIONS.setdefault(rule.from_state, set()).add(rule.transition)
    TRANSITION_TARGETS[(rule.from_state, rule.transition)] = rule


TERMINAL_STATES: Set[BorrowingStatus] = {
    BorrowingStatus.RETURNED,
    BorrowingStatus.REJECTED,
}

# States in which an approval decision is still expected
PENDING_APPROVAL_STATES: Set[BorrowingStatus] = {
    BorrowingStatus.SUBMITTED,
    BorrowingStatus.PENDING_APPROVAL,
}

# Assets are out of the lab; overdue can only apply here
OPEN_BORROWING_STATES: Set[BorrowingStatus] = {
    BorrowingStatus.ACTIVE,
    BorrowingStatus.PARTIALLY_RETURNED,
}


def can_transition(from_state: BorrowingStatus, transition: BorrowingTransition) -> bool:
    """Check if a transition is valid from the given state."""
    return transition in VALID_TRANSITIONS.get(from_state, set())


def get_transition_rule(from_state: BorrowingStatus, transition: BorrowingTransition) -> Optional[TransitionRule]:
    """Get the transition rule for a state/action combination."""
    return TRANSITION_TARGETS.get((from_state, transition))


def get_target_state(from_state: BorrowingStatus, transition: BorrowingTransition) -> Optional[BorrowingStatus]:
    """Get the target state for a transition."""
    rule = get_transition_rule(from_state, transition)
    return rule.to_state if rule else None


def status_values(states) -> list[str]:
    """Stored string values for a set of states, for SQL IN clauses."""
    return sorted(s.value for s in states)
