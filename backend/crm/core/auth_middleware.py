"""ATA CRM — JWT auth middleware: decodes the bearer token, sets request.state.user."""
import logging
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from crm.api.deps import CurrentUser
from crm.core.security import decode_token

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
        if path in self.PUBLIC_PATHS or path.startswith("/api/v1/track/"):
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            token = auth[7:].strip()
            payload = decode_token(token)
            if payload and payload.get("type") == "access":
                sub = payload.get("sub")
                company_id = payload.get("company_id")
                if sub and company_id is not None:
                    try:
                        request.state.user = CurrentUser(
                            id=int(sub),
                            company_id=int(company_id),
                            role=payload.get("role", "CLIENT"),
                            name=payload.get("name") or "User",
                            client_id=payload.get("client_id"),
                        )
                    except (TypeError, ValueError):
                        logger.warning("Rejected token with malformed claims for sub=%r", sub)
            else:
                logger.debug("Invalid or expired bearer token on %s", path)

        return await call_next(request)
