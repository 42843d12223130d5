"""Role -> permission matrix and the service-side permission check."""
import uuid

import pytest

from app.core.errors import ErrorCode, ForbiddenError, UnauthorizedError
from app.core.rbac import (
    PERM_HEALTH_VIEW,
    PERM_MATERIALS_ISSUE,
    PERM_PRODUCTION_START,
    PERM_STEPS_ASSIGN,
    PERM_STEPS_EXECUTE,
    CurrentUser,
    ensure_permission,
    has_permission,
)


@pytest.mark.parametrize(
    "role, permission, allowed",
    [
        ("ADMIN", PERM_STEPS_ASSIGN, True),
        ("PRODUCTION", PERM_STEPS_ASSIGN, False),
        ("PRODUCTION", PERM_PRODUCTION_START, True),
        ("PRODUCTION", PERM_STEPS_EXECUTE, True),
        ("WAREHOUSE", PERM_MATERIALS_ISSUE, True),
        ("WAREHOUSE", PERM_PRODUCTION_START, False),
        ("WAREHOUSE", PERM_HEALTH_VIEW, True),
        ("REP", PERM_HEALTH_VIEW, False),
        ("UNKNOWN", PERM_STEPS_EXECUTE, False),
        (None, PERM_STEPS_EXECUTE, False),
    ],
)
def test_permission_matrix(role, permission, allowed):
    assert has_permission(role, permission) is allowed


def test_missing_actor_is_unauthorized():
    with pytest.raises(UnauthorizedError) as exc:
        ensure_permission(None, PERM_STEPS_EXECUTE)
    assert exc.value.code == ErrorCode.UNAUTHORIZED
    assert exc.value.status_code == 401


def test_missing_permission_is_forbidden():
    rep = CurrentUser(id=uuid.uuid4(), email="rep@test.local", role="REP")
    with pytest.raises(ForbiddenError) as exc:
        ensure_permission(rep, PERM_STEPS_EXECUTE)
    assert exc.value.code == ErrorCode.FORBIDDEN
    assert exc.value.details["permission"] == PERM_STEPS_EXECUTE


def test_admin_flag():
    admin = CurrentUser(id=uuid.uuid4(), email="admin@test.local", role="ADMIN")
    assert admin.is_admin
    assert ensure_permission(admin, PERM_STEPS_ASSIGN) is admin
