"""Borrowing state machine implementation.

Handles state transitions with validation, actor-role checking and
post-transition callbacks. Persistence is the caller's job.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable, Union
from uuid import UUID
import uuid

from labflow.core.errors import AuthorizationError, InvalidTransition
from labflow.core.rbac.roles import AppRole, parse_role

from .states import (
    BorrowingStatus,
    BorrowingTransition,
    can_transition,
    get_transition_rule,
    TERMINAL_STATES,
)

logger = logging.getLogger(__name__)


class BorrowingStateMachine:
    """
    State machine for a single borrowing transaction.

    Manages transitions between borrowing states with:
    - Validation of valid transitions
    - Actor role checking for protected transitions
    - In-memory transition history
    - Callback hooks for side effects
    """

    def __init__(
        self,
        transaction_id: UUID,
        current_state: Union[BorrowingStatus, str],
        *,
        actor_role: Union[AppRole, str, None] = None,
    ):
        """
        Initialize the state machine.

        Args:
            transaction_id: ID of the borrowing transaction
            current_state: Current stored status
            actor_role: Role of the user driving the transitions
        """
        self.transaction_id = transaction_id
        self._state = BorrowingStatus(current_state)
        self.actor_role = parse_role(actor_role)
        self._transition_history: list[Dict[str, Any]] = []
        self._callbacks: Dict[BorrowingTransition, list[Callable]] = {}

    @property
    def state(self) -> BorrowingStatus:
        """Current state of the transaction."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal (no further transitions)."""
        return self._state in TERMINAL_STATES

    def can_perform(self, transition: BorrowingTransition) -> bool:
        """Check if a transition can be performed from current state."""
        if not can_transition(self._state, transition):
            return False

        rule = get_transition_rule(self._state, transition)
        if rule and rule.actor_roles and self.actor_role not in rule.actor_roles:
            return False

        return True

    def get_available_transitions(self) -> list[BorrowingTransition]:
        """Get list of transitions available from current state."""
        return [t for t in BorrowingTransition if self.can_perform(t)]

    def transition(
        self,
        transition: BorrowingTransition,
        *,
        user_id: Optional[UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BorrowingStatus:
        """
        Perform a state transition.

        Args:
            transition: The transition to perform
            user_id: ID of user performing the transition
            metadata: Additional metadata to record

        Returns:
            The new state after transition

        Raises:
            InvalidTransition: If the transition is invalid from the current state
            AuthorizationError: If the actor role may not perform it
        """
        rule = get_transition_rule(self._state, transition)
        if rule is None:
            raise InvalidTransition(
                f"Cannot perform {transition.value} from status {self._state.value}.",
                self._state,
                transition,
            )

        if rule.actor_roles and self.actor_role not in rule.actor_roles:
            raise AuthorizationError(
                f"Role {self.actor_role.value if self.actor_role else 'unknown'} "
                f"cannot perform {transition.value}."
            )

        from_state = self._state
        record = {
            "id": uuid.uuid4(),
            "transaction_id": self.transaction_id,
            "from_state": from_state.value,
            "to_state": rule.to_state.value,
            "transition": transition.value,
            "user_id": user_id,
            "metadata": metadata or {},
            "timestamp": datetime.utcnow(),
        }
        self._transition_history.append(record)

        self._state = rule.to_state

        self._execute_callbacks(transition, record)

        return self._state

    def register_callback(
        self,
        transition: BorrowingTransition,
        callback: Callable[[Dict[str, Any]], None],
    ) -> None:
        """Register a callback to be executed after a transition."""
        self._callbacks.setdefault(transition, []).append(callback)

    def get_history(self) -> list[Dict[str, Any]]:
        """Get the transitions performed through this machine."""
        return self._transition_history.copy()

    def _execute_callbacks(self, transition: BorrowingTransition, record: Dict[str, Any]) -> None:
        """Execute registered callbacks for a transition."""
        for callback in self._callbacks.get(transition, []):
            try:
                callback(record)
            except Exception:
                logger.exception("Callback error for %s on %s", transition.value, self.transaction_id)
