"""BATCHWORKS FastAPI dependencies (auth, DB, permissions)."""
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import UnauthorizedError
from app.core.rbac import CurrentUser, ensure_permission
from app.db.session import get_db

DbSession = Annotated[AsyncSession, Depends(get_db)]

__all__ = ["CurrentUser", "DbSession", "get_db", "get_current_user", "require_auth", "require_permission"]


async def get_current_user(request: Request) -> CurrentUser | None:
    """Extract user from request.state (populated by auth middleware)."""
    return getattr(request.state, "user", None)


async def require_auth(request: Request) -> CurrentUser:
    """Require authenticated user. Raise 401 if not logged in."""
    user = getattr(request.state, "user", None)
    if not user:
        raise UnauthorizedError("Not authenticated")
    return user


def require_permission(permission: str):
    """Dependency factory: require specific RBAC permission."""

    async def _check(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        return ensure_permission(user, permission)

    return _check
