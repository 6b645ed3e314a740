"""
Reporting-date schemas.

The record layout (``reportingDate`` / ``verified`` / ``charDate``) is what
the date-picker dropdown already consumes, so field names are camelCase on
the wire and snake_case in Python.

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ReportingDateRecord(BaseModel):
    """One selectable reporting date."""

    model_config = ConfigDict(populate_by_name=True)

    reporting_date: date = Field(alias="reportingDate", description="ISO calendar date")
    verified: Literal["Y"] = Field(default="Y", description="Always 'Y'")
    char_date: str = Field(alias="charDate", description="The date rendered as YYYY-MM-DD")

    @classmethod
    def from_date(cls, value: date) -> ReportingDateRecord:
        return cls(reporting_date=value, char_date=value.isoformat())


class ReportingDatesResponse(BaseModel):
    """Envelope for ``GET /reporting-dates``.

    ``stale`` is true when the user's entitlements came from a cached set
    older than the fresh TTL because the entitlement source was unreachable.
    """

    model_config = ConfigDict(populate_by_name=True)

    data: list[ReportingDateRecord] = Field(default_factory=list, description="Ascending by date")
    generation: int = Field(description="Generation version that answered the query")
    stale: bool = Field(default=False, description="Entitlements served from stale cache")
    entitlement_age_seconds: float = Field(
        default=0.0, alias="entitlementAgeSeconds", description="Age of the entitlement set used"
    )
    elapsed_ms: float = Field(default=0.0, description="Server-side processing time")
