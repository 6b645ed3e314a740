"""
Ambient primitives shared by every datespine module.

Manifesto:
    Errors, logging, settings, retry and timeout live here so the cache
    modules above stay focused on dates and bitmaps.

Tags:
    datespine, core, errors, logging, settings, retry, timeout

Doc-Types:
    api-reference
"""

from datespine.core.errors import (
    DateSpineError,
    EntitlementUnavailable,
    ErrorCategory,
    InvalidRequest,
    NoGenerationAvailable,
    QueryCancelled,
    RebuildFailed,
    RebuildInProgress,
)
from datespine.core.logging import configure_logging, get_logger
from datespine.core.settings import DateSpineSettings

__all__ = [
    "DateSpineError",
    "DateSpineSettings",
    "EntitlementUnavailable",
    "ErrorCategory",
    "InvalidRequest",
    "NoGenerationAvailable",
    "QueryCancelled",
    "RebuildFailed",
    "RebuildInProgress",
    "configure_logging",
    "get_logger",
]
