"""BATCHWORKS domain errors.

Every service raises an AppError subclass carrying a machine-readable code.
The API layer renders them into the standard error envelope; callers that
embed the services directly can switch on ``exc.code``.
"""
from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_OPERATION = "INVALID_OPERATION"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MATERIAL_SHORTAGE = "MATERIAL_SHORTAGE"


class AppError(Exception):
    """Base class for expected, user-facing failures."""

    code: ErrorCode = ErrorCode.INVALID_OPERATION
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


class UnauthorizedError(AppError):
    code = ErrorCode.UNAUTHORIZED
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    code = ErrorCode.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStatusError(AppError):
    """The entity is not in a state that allows the transition."""

    code = ErrorCode.INVALID_STATUS
    status_code = status.HTTP_409_CONFLICT


class InvalidOperationError(AppError):
    """Structurally disallowed operation (e.g. completing an order with open batches)."""

    code = ErrorCode.INVALID_OPERATION
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(AppError):
    """Lost a race or the resource is owned by another user."""

    code = ErrorCode.CONFLICT
    status_code = status.HTTP_409_CONFLICT


class ValidationError(AppError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = status.HTTP_400_BAD_REQUEST


class MaterialShortageError(AppError):
    """Raised when one or more issuance lines cannot be covered by available stock."""

    code = ErrorCode.MATERIAL_SHORTAGE
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, shortages: list[dict[str, Any]], message: str = "Insufficient material on hand"):
        super().__init__(message, details={"shortages": shortages})
        self.shortages = shortages
