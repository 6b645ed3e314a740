"""Timing middleware: ``X-Process-Time-Ms`` plus a slow-request log line.

The dropdown calls ``/reporting-dates`` on every render, so anything over
``slow_request_ms`` is logged with the path and status for follow-up.

Tags:
    datespine, api, middleware, timing, latency

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from datespine.core.logging import get_logger

log = get_logger(__name__)


class TimingMiddleware(BaseHTTPMiddleware):
    """Expose request processing time and flag slow requests.

    Parameters
    ----------
    slow_request_ms:
        Threshold above which a ``slow_request`` warning is logged.
        ``None`` disables the warning.
    """

    def __init__(self, app: object, slow_request_ms: float | None = None) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time-Ms"] = str(elapsed_ms)
        if self._slow_request_ms is not None and elapsed_ms > self._slow_request_ms:
            log.warning(
                "slow_request",
                path=request.url.path,
                status=response.status_code,
                elapsed_ms=elapsed_ms,
            )
        return response
