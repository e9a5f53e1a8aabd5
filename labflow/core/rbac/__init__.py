"""RBAC module for Labflow.

Roles, lab scoping and endpoint guards.
"""

from .roles import AppRole, STEP_APPROVER_ROLES, OPERATOR_ROLES, parse_role, can_access_lab
from .checker import require_role

__all__ = [
    "AppRole",
    "STEP_APPROVER_ROLES",
    "OPERATOR_ROLES",
    "parse_role",
    "can_access_lab",
    "require_role",
]
