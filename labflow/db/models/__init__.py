"""Database models for Labflow."""

from labflow.db.models.user import User
from labflow.db.models.lab import Lab, UserLabAssignment
from labflow.db.models.matrix import ApprovalMatrix
from labflow.db.models.inventory import ToolAsset, ConsumableItem, ConsumableStockMovement
from labflow.db.models.borrowing import (
    BorrowingTransaction,
    BorrowingTransactionItem,
    ApprovalDecision,
    BorrowingHandover,
    BorrowingReturn,
    BorrowingReturnItem,
)
from labflow.db.models.notification import UserNotificationState
from labflow.db.models.audit import SecurityAuditLog, AuditOutcome

__all__ = [
    "User",
    "Lab",
    "UserLabAssignment",
    "ApprovalMatrix",
    "ToolAsset",
    "ConsumableItem",
    "ConsumableStockMovement",
    "BorrowingTransaction",
    "BorrowingTransactionItem",
    "ApprovalDecision",
    "BorrowingHandover",
    "BorrowingReturn",
    "BorrowingReturnItem",
    "UserNotificationState",
    "SecurityAuditLog",
    "AuditOutcome",
]
