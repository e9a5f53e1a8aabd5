"""Tests for roles and the role guard."""

import asyncio
from types import SimpleNamespace
from uuid import uuid4

import pytest

from labflow.core.errors import AuthorizationError
from labflow.core.rbac import (
    AppRole,
    OPERATOR_ROLES,
    STEP_APPROVER_ROLES,
    can_access_lab,
    parse_role,
    require_role,
)


class TestRoles:
    """Test role definitions."""

    def test_parse_role(self):
        """Stored strings map onto roles; unknown ones do not."""
        assert parse_role("lab-staff") == AppRole.LAB_STAFF
        assert parse_role(AppRole.ADMIN) == AppRole.ADMIN
        assert parse_role("lab_staff") is None
        assert parse_role(None) is None

    def test_step_roles(self):
        assert STEP_APPROVER_ROLES == {1: AppRole.INSTRUCTOR, 2: AppRole.LAB_STAFF}

    def test_operators(self):
        assert OPERATOR_ROLES == {AppRole.ADMIN, AppRole.LAB_STAFF}


class TestLabAccess:
    """Test lab scoping."""

    def test_admin_reaches_every_lab(self):
        assert can_access_lab("admin", uuid4())

    def test_staff_only_assigned_labs(self):
        lab_id = uuid4()
        assert can_access_lab("lab-staff", lab_id, [lab_id])
        assert not can_access_lab("lab-staff", uuid4(), [lab_id])
        assert not can_access_lab("lab-staff", lab_id, None)

    def test_requester_never(self):
        lab_id = uuid4()
        assert not can_access_lab("requester", lab_id, [lab_id])


class TestRequireRole:
    """Test the endpoint decorator."""

    @staticmethod
    @require_role(AppRole.ADMIN, "lab-staff")
    async def endpoint(current_user=None):
        return "done"

    def test_allowed(self):
        user = SimpleNamespace(role="lab-staff")
        assert asyncio.run(self.endpoint(current_user=user)) == "done"

    def test_denied(self):
        user = SimpleNamespace(role="instructor")
        with pytest.raises(AuthorizationError):
            asyncio.run(self.endpoint(current_user=user))

    def test_missing_user(self):
        with pytest.raises(AuthorizationError, match="Authentication required"):
            asyncio.run(self.endpoint())
