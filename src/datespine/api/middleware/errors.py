"""
Error-handling middleware — maps datespine errors to RFC 7807 responses.

    InvalidRequest / request validation  → 400
    RebuildInProgress                    → 409
    EntitlementUnavailable               → 503 + Retry-After
    NoGenerationAvailable                → 503 + Retry-After
    QueryCancelled                       → 504
    anything else                        → 500
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from datespine.api.schemas.common import ErrorDetail, ProblemDetail
from datespine.core.errors import (
    DateSpineError,
    EntitlementUnavailable,
    InvalidRequest,
    NoGenerationAvailable,
    QueryCancelled,
    RebuildInProgress,
)
from datespine.core.logging import get_logger

log = get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 30

# ── Error type → HTTP status mapping ─────────────────────────────────────

ERROR_STATUS: list[tuple[type[DateSpineError], int, str]] = [
    (InvalidRequest, 400, "Invalid request"),
    (RebuildInProgress, 409, "Rebuild in progress"),
    (EntitlementUnavailable, 503, "Entitlements unavailable"),
    (NoGenerationAvailable, 503, "Reporting dates not yet available"),
    (QueryCancelled, 504, "Query cancelled"),
]


def status_for_error(exc: DateSpineError) -> tuple[int, str]:
    """Resolve a datespine error to ``(status, title)``, defaulting to 500."""
    for error_type, status, title in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status, title
    return 500, "Internal Server Error"


def problem_response(
    *,
    status: int,
    title: str,
    detail: str = "",
    instance: str = "",
    errors: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build a RFC 7807 JSON error response."""
    body = ProblemDetail(
        title=title,
        status=status,
        detail=detail,
        instance=instance,
    )
    if errors:
        body.errors = [ErrorDetail(**e) for e in errors]
    return JSONResponse(status_code=status, content=body.model_dump(), headers=headers)


async def datespine_error_handler(request: Request, exc: DateSpineError) -> JSONResponse:
    status, title = status_for_error(exc)
    headers: dict[str, str] = {}
    if status == 503:
        headers["Retry-After"] = str(exc.retry_after or DEFAULT_RETRY_AFTER_SECONDS)

    if status >= 500:
        log.error("request_failed", status=status, **exc.to_dict())
    else:
        log.info("request_rejected", status=status, error_type=type(exc).__name__, message=exc.message)

    errors = None
    field = getattr(exc, "field", None)
    if field:
        errors = [{"code": exc.category.value, "message": exc.message, "field": field}]
    return problem_response(
        status=status,
        title=title,
        detail=exc.message,
        instance=str(request.url),
        errors=errors,
        headers=headers or None,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed query/body parameters are a 400, not FastAPI's default 422."""
    errors = [
        {
            "code": str(err.get("type", "invalid")),
            "message": str(err.get("msg", "")),
            "field": ".".join(str(part) for part in err.get("loc", ())) or None,
        }
        for err in exc.errors()
    ]
    return problem_response(
        status=400,
        title="Invalid request",
        detail="Request parameters failed validation.",
        instance=str(request.url),
        errors=errors,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — returns 500 with ProblemDetail."""
    log.exception("unhandled_exception", error=str(exc))
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail=str(exc) if request.app.state.settings.debug else "An unexpected error occurred.",
        instance=str(request.url),
    )
