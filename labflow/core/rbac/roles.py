"""Application roles for Labflow.

Defines the 4 roles and the lab-scoping rule:
1. Admin - Full access to every lab, may act as approver fallback
2. Instructor - Step 1 approver for assigned labs
3. Lab staff - Step 2 approver, handover and returns for assigned labs
4. Requester - Creates borrowing requests for themself
"""

from enum import Enum
from typing import Iterable, Optional, Union
from uuid import UUID


class AppRole(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    LAB_STAFF = "lab-staff"
    REQUESTER = "requester"


# Role that must hold each approval step
STEP_APPROVER_ROLES = {
    1: AppRole.INSTRUCTOR,
    2: AppRole.LAB_STAFF,
}

# Roles allowed to process handover and returns
OPERATOR_ROLES = {AppRole.ADMIN, AppRole.LAB_STAFF}


def parse_role(value: Union[str, AppRole, None]) -> Optional[AppRole]:
    """Convert a stored role string into an AppRole, or None if unknown."""
    if value is None:
        return None
    if isinstance(value, AppRole):
        return value
    try:
        return AppRole(value)
    except ValueError:
        return None


def can_access_lab(
    role: Union[str, AppRole, None],
    lab_id: UUID,
    assigned_lab_ids: Optional[Iterable[UUID]] = None,
) -> bool:
    """Admins reach every lab; lab staff and instructors only their assignments."""
    role = parse_role(role)
    if role == AppRole.ADMIN:
        return True
    if role in (AppRole.LAB_STAFF, AppRole.INSTRUCTOR):
        return lab_id in set(assigned_lab_ids or [])
    return False
