"""BATCHWORKS roles, permission keys and the role -> permission matrix.

Checked once at every service entry point, so the same rules hold whether a
call arrives over HTTP, from a Celery task or from a script.
"""
from enum import Enum
from uuid import UUID

from app.core.errors import ForbiddenError, UnauthorizedError


class Role(str, Enum):
    ADMIN = "ADMIN"
    PRODUCTION = "PRODUCTION"
    WAREHOUSE = "WAREHOUSE"
    REP = "REP"


# ── Permission keys ─────────────────────────────────────────────────────────
# Use these string constants everywhere, no raw strings in services or routes.
PERM_PRODUCTION_VIEW = "production:view"
PERM_PRODUCTION_CREATE = "production:create"
PERM_PRODUCTION_ASSIGN = "production:assign"
PERM_PRODUCTION_START = "production:start"
PERM_PRODUCTION_BLOCK = "production:block"
PERM_PRODUCTION_ARCHIVE = "production:archive"
PERM_PRODUCTION_COMPLETE = "production:complete"
PERM_STEPS_EXECUTE = "steps:execute"
PERM_STEPS_EDIT = "steps:edit"
PERM_STEPS_ASSIGN = "steps:assign"
PERM_TEMPLATES_MANAGE = "templates:manage"
PERM_BATCHES_EXECUTE = "batches:execute"
PERM_BATCHES_QC = "batches:qc"
PERM_BATCHES_LABOR = "batches:labor"
PERM_MATERIALS_ISSUE = "materials:issue"
PERM_INVENTORY_VIEW = "inventory:view"
PERM_INVENTORY_ADJUST = "inventory:adjust"
PERM_INVENTORY_RESERVE = "inventory:reserve"
PERM_HEALTH_VIEW = "health:view"
PERM_PRODUCTS_MANAGE = "products:manage"

# ── Role → permissions matrix ────────────────────────────────────────────────
_PRODUCTION_PERMS = {
    PERM_PRODUCTION_VIEW,
    PERM_PRODUCTION_CREATE, PERM_PRODUCTION_ASSIGN,
    PERM_PRODUCTION_START, PERM_PRODUCTION_BLOCK, PERM_PRODUCTION_ARCHIVE, PERM_PRODUCTION_COMPLETE,
    PERM_STEPS_EXECUTE, PERM_STEPS_EDIT,
    PERM_TEMPLATES_MANAGE,
    PERM_BATCHES_EXECUTE, PERM_BATCHES_QC, PERM_BATCHES_LABOR,
    PERM_MATERIALS_ISSUE,
    PERM_INVENTORY_VIEW,
    PERM_HEALTH_VIEW,
}

_WAREHOUSE_PERMS = {
    PERM_PRODUCTION_VIEW,
    PERM_MATERIALS_ISSUE,
    PERM_INVENTORY_VIEW, PERM_INVENTORY_ADJUST, PERM_INVENTORY_RESERVE,
    PERM_HEALTH_VIEW,
}

_ADMIN_PERMS = _PRODUCTION_PERMS | _WAREHOUSE_PERMS | {
    PERM_STEPS_ASSIGN,
    PERM_PRODUCTS_MANAGE,
}

PERMISSION_MATRIX: dict[str, set[str]] = {
    Role.ADMIN.value: _ADMIN_PERMS,
    Role.PRODUCTION.value: _PRODUCTION_PERMS,
    Role.WAREHOUSE.value: _WAREHOUSE_PERMS,
    Role.REP.value: set(),
}


def has_permission(role: str | None, permission: str) -> bool:
    return permission in PERMISSION_MATRIX.get(role or "", set())


class CurrentUser:
    """User identity from the JWT, set on request.state by middleware."""

    def __init__(self, id: UUID, email: str, role: str):
        self.id = id
        self.email = email
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def has_permission(self, permission: str) -> bool:
        return has_permission(self.role, permission)

    def __repr__(self) -> str:
        return f"CurrentUser(id={self.id}, role={self.role})"


def ensure_permission(actor: CurrentUser | None, permission: str) -> CurrentUser:
    """Raise UNAUTHORIZED without an actor, FORBIDDEN without the permission."""
    if actor is None:
        raise UnauthorizedError("Not authenticated")
    if not actor.has_permission(permission):
        raise ForbiddenError(
            f"Permission denied: '{permission}' required. Your role: {actor.role}",
            details={"permission": permission, "role": actor.role},
        )
    return actor
