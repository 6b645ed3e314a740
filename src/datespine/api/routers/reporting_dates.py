"""
Reporting-dates router — the dropdown endpoint.

Endpoints:
    GET /reporting-dates    Dates visible to one user, ascending

The query runs on a worker thread so the event loop stays free. A cancel
token is shared with that thread and set when the client disconnects or
the request deadline passes; the query aborts at its next check and the
generation handle is released on the way out.

Tags:
    datespine, api, reporting-dates, cancellation

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

import asyncio
import threading
import time

from fastapi import APIRouter, Header, Query, Request, Response

from datespine.api.deps import RuntimeDep, Settings
from datespine.api.schemas.common import ProblemDetail
from datespine.api.schemas.reporting_dates import ReportingDateRecord, ReportingDatesResponse
from datespine.core.errors import QueryCancelled
from datespine.core.logging import LogContext, get_logger

log = get_logger(__name__)

router = APIRouter()

_DISCONNECT_POLL_SECONDS = 0.1


async def _watch_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            log.info("client_disconnected")
            cancel.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


@router.get(
    "/reporting-dates",
    response_model=ReportingDatesResponse,
    responses={
        400: {"model": ProblemDetail},
        503: {"model": ProblemDetail},
        504: {"model": ProblemDetail},
    },
)
async def get_reporting_dates(
    request: Request,
    response: Response,
    runtime: RuntimeDep,
    settings: Settings,
    user_id: str | None = Query(None, description="User identity (or X-User-Id header)"),
    x_user_id: str | None = Header(None, alias="X-User-Id"),
) -> ReportingDatesResponse:
    """Reporting dates for which at least one of the user's entitled securities has data."""
    start = time.perf_counter()
    uid = user_id or x_user_id
    cancel = threading.Event()
    # to_thread copies the context, so worker-side logs carry user_id too
    with LogContext(user_id=uid):
        watcher = asyncio.create_task(_watch_disconnect(request, cancel))
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(runtime.service.get_visible_dates, uid, cancel),
                timeout=settings.request_timeout_seconds,
            )
        except TimeoutError as e:
            cancel.set()
            raise QueryCancelled(
                f"request exceeded the {settings.request_timeout_seconds}s deadline"
            ).with_context(user_id=uid) from e
        finally:
            watcher.cancel()

    response.headers["X-Entitlement-Stale"] = "true" if result.stale else "false"
    response.headers["X-Generation"] = str(result.generation)
    return ReportingDatesResponse(
        data=[ReportingDateRecord.from_date(d) for d in result.dates],
        generation=result.generation,
        stale=result.stale,
        entitlement_age_seconds=round(result.entitlement_age_seconds, 3),
        elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
    )
