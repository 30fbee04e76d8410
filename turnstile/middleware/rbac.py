"""Resolve the caller of every request before routing."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from turnstile.dependencies.auth import User, resolve_user_from_token

logger = logging.getLogger(__name__)

GATE_HEADER = "X-Gate-Id"
_PUBLIC_PATHS = ("/ping", "/metrics")


class RBACMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state`` with the authenticated user and the calling gate."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request.state.gate_id = request.headers.get(GATE_HEADER) or None
        if request.url.path.startswith(_PUBLIC_PATHS):
            return await call_next(request)

        token: str | None = None
        authorization = request.headers.get("Authorization")
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() != "bearer":
                return JSONResponse(status_code=401, content={"detail": "Invalid authentication credentials"})
            token = credentials or None

        try:
            user: User = resolve_user_from_token(token)
        except HTTPException as exc:
            logger.info("Rejected request to %s: %s", request.url.path, exc.detail)
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        request.state.user = user
        return await call_next(request)
