"""Services for Labflow."""

from labflow.services.audit import write_security_audit_log
from labflow.services.notifications import NotificationAggregator, NotificationItem, NotificationSummary
from labflow.services.revalidation import CacheRevalidator, log_subscriber

__all__ = [
    "write_security_audit_log",
    "NotificationAggregator",
    "NotificationItem",
    "NotificationSummary",
    "CacheRevalidator",
    "log_subscriber",
]
