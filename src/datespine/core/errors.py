"""
Structured error types for the reporting-date availability cache.

Every failure the service can surface carries a category, a retry hint, and
structured context so logs, alerts and HTTP responses can tell "no dates are
visible" (a valid, empty answer) apart from "visibility could not be
determined" (a failure).

Manifesto:
    - **Typed Error Hierarchy:** Rebuild-side and read-side errors never mix
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry user, generation and source metadata
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      DateSpineError                             │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  RebuildFailed          EntitlementUnavailable  InvalidRequest  │
        │  (REBUILD)              (ENTITLEMENT)           (VALIDATION)    │
        │     │                                                           │
        │  ImplausibleRebuild     EntitlementSourceError  QueryCancelled  │
        │  SourceOrderingError    (ENTITLEMENT, retry)    (QUERY)         │
        │  RebuildInProgress                                              │
        │                                                                 │
        │  NoGenerationAvailable  ConfigError                             │
        │  (GENERATION)           (CONFIG)                                │
        └─────────────────────────────────────────────────────────────────┘

    Degraded conditions that are *not* errors:
        - stale entitlement served → ``ResolvedEntitlement.stale``
        - unknown security         → counted in ``QueryStats.unknown``

Examples:
    >>> err = EntitlementUnavailable("source down").with_context(user_id="u1")
    >>> err.retryable
    True
    >>> err.to_dict()["context"]["user_id"]
    'u1'

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, datespine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories drive alert routing (rebuild failures page the data team,
    entitlement failures page whoever owns the entitlement source) and the
    HTTP status chosen by the API layer.

    Attributes:
        REBUILD: Nightly index rebuild failures (never reach readers)
        GENERATION: No servable generation exists yet
        ENTITLEMENT: Entitlement source unreachable / misbehaving
        QUERY: Read-path query aborted (cancelled, timed out)
        SOURCE: Fact data source errors
        VALIDATION: Malformed caller input
        CONFIG: Missing or invalid settings
        INTERNAL: Bugs, unexpected state
    """

    REBUILD = "REBUILD"
    GENERATION = "GENERATION"
    ENTITLEMENT = "ENTITLEMENT"
    QUERY = "QUERY"
    SOURCE = "SOURCE"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured context for errors.

    Attributes:
        user_id: User whose request failed
        request_id: Correlation id from ``X-Request-ID``
        generation: Generation version involved, if any
        source_name: Name of the collaborator (``fact_source``, ``entitlements``)
        metadata: Additional key-value pairs
    """

    user_id: str | None = None
    request_id: str | None = None
    generation: int | None = None
    source_name: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["user_id", "request_id", "generation", "source_name"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DateSpineError(Exception):
    """
    Base exception for all datespine errors.

    All instances carry:
    - **category:** ErrorCategory enum for classification and routing
    - **retryable:** Boolean indicating if the operation can be retried
    - **retry_after:** Optional seconds to wait before retry
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = DateSpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DateSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise EntitlementUnavailable("down").with_context(user_id="u1")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# REBUILD ERRORS (isolated from the read path)
# =============================================================================


class RebuildFailed(DateSpineError):
    """
    Nightly rebuild could not produce a trustworthy generation.

    The previous generation stays current; the failure is alerted and
    never observed by readers. Rebuilds are idempotent so the operation
    may be retried once the source is healthy.
    """

    default_category = ErrorCategory.REBUILD
    default_retryable = True


class ImplausibleRebuild(RebuildFailed):
    """Scan succeeded but the result looks like a partial load."""

    def __init__(self, message: str, *, observed: int, previous: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.observed = observed
        self.previous = previous
        self.context.metadata.update({"observed_securities": observed, "previous_securities": previous})


class SourceOrderingError(RebuildFailed):
    """Scan broke the security-then-date ordering contract."""

    default_retryable = False


class RebuildInProgress(RebuildFailed):
    """A rebuild is already running; this request was coalesced."""

    default_retryable = True


# =============================================================================
# READ-PATH ERRORS (surfaced synchronously to the caller)
# =============================================================================


class EntitlementSourceError(DateSpineError):
    """The external entitlement source failed a lookup."""

    default_category = ErrorCategory.ENTITLEMENT
    default_retryable = True


class EntitlementUnavailable(DateSpineError):
    """
    Entitlement source unreachable and no usable cached entitlement exists.

    "Usable" means cached and no older than the staleness ceiling.
    """

    default_category = ErrorCategory.ENTITLEMENT
    default_retryable = True


class NoGenerationAvailable(DateSpineError):
    """No generation has been published yet; visibility is undetermined."""

    default_category = ErrorCategory.GENERATION
    default_retryable = True


class QueryCancelled(DateSpineError):
    """The caller went away or the request deadline passed mid-query."""

    default_category = ErrorCategory.QUERY


class InvalidRequest(DateSpineError):
    """
    Malformed caller input.

    Never retryable - the request must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class SourceError(DateSpineError):
    """Fact data source failure (connection, missing table, bad row)."""

    default_category = ErrorCategory.SOURCE
    default_retryable = True


class ConfigError(DateSpineError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Return the retry hint of a datespine error; foreign errors are not retried."""
    if isinstance(error, DateSpineError):
        return error.retryable
    return False


def categorize_error(error: Exception) -> ErrorCategory:
    """Best-effort category for any exception."""
    if isinstance(error, DateSpineError):
        return error.category
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DateSpineError",
    "RebuildFailed",
    "ImplausibleRebuild",
    "SourceOrderingError",
    "RebuildInProgress",
    "EntitlementSourceError",
    "EntitlementUnavailable",
    "NoGenerationAvailable",
    "QueryCancelled",
    "InvalidRequest",
    "SourceError",
    "ConfigError",
    "is_retryable",
    "categorize_error",
]
