from labflow.api.routers import approval_matrix, borrowings, health, notifications

__all__ = ["approval_matrix", "borrowings", "health", "notifications"]
