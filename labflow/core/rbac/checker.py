"""Role checking utilities for Labflow endpoints."""

from functools import wraps
from typing import Callable, Union

from labflow.core.errors import AuthorizationError

from .roles import AppRole, parse_role


def require_role(*roles: Union[str, AppRole]):
    """
    Decorator factory for FastAPI endpoints restricted to some roles.

    Usage:
        @router.put("/approval-matrix/{lab_id}")
        @require_role(AppRole.ADMIN)
        async def save_matrix(current_user: User = Depends(get_current_user)):
            ...
    """
    allowed = {parse_role(r) for r in roles}

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            current_user = kwargs.get("current_user")
            if current_user is None:
                raise AuthorizationError("Authentication required.")

            if parse_role(current_user.role) not in allowed:
                raise AuthorizationError("Access denied.")

            return await func(*args, **kwargs)

        return wrapper
    return decorator
