"""
Common API schemas — RFC 7807 errors.

Every non-2xx response uses :class:`ProblemDetail`.

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Structured error detail for field-level errors."""

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    field: str | None = Field(default=None, description="Field path if error is field-specific")


class ProblemDetail(BaseModel):
    """RFC 7807 «Problem Details for HTTP APIs».

    Used as the canonical error envelope for all non-2xx responses.

    Example:
        {
            "type": "about:blank",
            "title": "Entitlements unavailable",
            "status": 503,
            "detail": "entitlement source unavailable for user 'u1' ...",
            "instance": "/api/v1/reporting-dates?user_id=u1",
            "errors": []
        }
    """

    type: str = Field(default="about:blank", description="Error type URI (usually 'about:blank')")
    title: str = Field(description="Short human-readable error summary")
    status: int = Field(description="HTTP status code (e.g., 400, 503)")
    detail: str = Field(default="", description="Human-readable explanation of the error")
    instance: str = Field(default="", description="URI of the failing request")
    errors: list[ErrorDetail] = Field(
        default_factory=list,
        description="List of field-level or nested error details",
    )
