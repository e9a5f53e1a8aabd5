"""Error taxonomy for the borrowing workflow.

Every error carries the HTTP status the API boundary answers with and a
message that is safe to show to the end user. Internal details (driver
errors, constraint names) stay in the server log.
"""

from typing import Optional


class LabflowError(Exception):
    """Base class for all workflow errors."""

    status_code: int = 400
    default_message: str = "Request could not be processed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(LabflowError):
    """Malformed input, rejected before touching storage."""

    status_code = 400
    default_message = "Submitted data is not valid."


class InvalidApprover(ValidationError):
    default_message = "Approver not found, inactive, or holds the wrong role."


class ApproverNotAssigned(ValidationError):
    default_message = "Approver is not assigned to this lab."


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationError(LabflowError):
    status_code = 403
    default_message = "Access denied."


class NotAuthorizedApprover(AuthorizationError):
    default_message = "You are not the designated approver for the pending step."


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(LabflowError):
    status_code = 404
    default_message = "Resource not found."


class TransactionNotFound(NotFoundError):
    default_message = "Borrowing transaction not found."


class MatrixNotFound(NotFoundError):
    default_message = "Approval matrix for this transaction is missing or inactive. Contact an administrator."


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictError(LabflowError):
    status_code = 409
    default_message = "Request conflicts with the current state."


class DuplicateDecision(ConflictError):
    default_message = "The same user cannot decide twice on one transaction."


class StepAlreadyDecided(ConflictError):
    default_message = "This approval step has already been decided."


class MatrixCannotActivate(ConflictError):
    default_message = "Matrix cannot be activated for this lab."


class InvalidTransition(ConflictError):
    """Raised when a state transition is not allowed from the current status."""

    default_message = "Transaction is not in a state that allows this action."

    def __init__(self, message: Optional[str] = None, from_state=None, transition=None):
        super().__init__(message)
        self.from_state = from_state
        self.transition = transition


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceError(LabflowError):
    status_code = 500
    default_message = "The request could not be saved. Please try again."
