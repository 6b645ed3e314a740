"""
API-key authentication middleware.

When ``DATESPINE_API_KEY`` is set, every request must include a matching
``X-API-Key`` header. When ``DATESPINE_ADMIN_API_KEY`` is set, requests to
``/admin`` paths must additionally carry a matching ``X-Admin-Key``.
Unauthenticated requests receive a 401 problem response.

Bypass paths (no auth required):
  - ``/health/*``
  - ``/docs``, ``/redoc``, ``/openapi.json``

Tags:
    datespine, api, middleware, authentication, API-key

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

# Paths that never require authentication
_BYPASS_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^/health"),
    re.compile(r"/docs$"),
    re.compile(r"/redoc$"),
    re.compile(r"/openapi\.json$"),
]

_ADMIN_PATTERN = re.compile(r"/admin(/|$)")


def _is_bypass(path: str) -> bool:
    """Return True if *path* should skip authentication."""
    return any(p.search(path) for p in _BYPASS_PATTERNS)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"type": "about:blank", "title": "Unauthorized", "status": 401, "detail": detail},
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """Reject requests that lack a valid API key or admin key.

    Parameters
    ----------
    app:
        The ASGI application to wrap.
    api_key:
        Expected ``X-API-Key`` value.  ``None`` disables enforcement.
    admin_api_key:
        Expected ``X-Admin-Key`` value for admin paths.  ``None`` leaves
        admin paths gated only by ``api_key``.
    """

    def __init__(
        self,
        app: object,
        api_key: str | None = None,
        admin_api_key: str | None = None,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._api_key = api_key
        self._admin_api_key = admin_api_key

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if _is_bypass(path):
            return await call_next(request)

        if self._api_key is not None and request.headers.get("X-API-Key") != self._api_key:
            return _unauthorized("Missing or invalid API key. Provide X-API-Key header.")

        if (
            self._admin_api_key is not None
            and _ADMIN_PATTERN.search(path)
            and request.headers.get("X-Admin-Key") != self._admin_api_key
        ):
            return _unauthorized("Missing or invalid admin key. Provide X-Admin-Key header.")

        return await call_next(request)
