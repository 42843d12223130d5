"""BATCHWORKS JWT auth middleware: extracts credentials, sets request.state.user."""
import logging
from typing import Callable
from uuid import UUID

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.rbac import CurrentUser, Role
from app.core.security import decode_token

logger = logging.getLogger(__name__)


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Extract JWT from the Authorization header and populate request.state.user."""

    PUBLIC_PATHS = {
        "/health",
        "/api/v1/docs",
        "/api/v1/redoc",
        "/api/v1/openapi.json",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.user = None

        path = request.url.path
        if (
            path in self.PUBLIC_PATHS
            or path.startswith("/api/v1/docs")
            or path.startswith("/api/v1/redoc")
            or path.startswith("/openapi")
        ):
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            token = auth[7:].strip()
            payload = decode_token(token)
            if payload and payload.get("type") == "access":
                sub = payload.get("sub")
                role = payload.get("role", Role.REP.value)
                email = payload.get("email") or "unknown"
                try:
                    user_id = UUID(sub) if sub else None
                except ValueError:
                    logger.warning("Rejected token with malformed subject: %r", sub)
                    user_id = None
                if user_id:
                    request.state.user = CurrentUser(id=user_id, email=email, role=role)
            else:
                logger.debug("Invalid or expired access token on %s", path)

        return await call_next(request)
