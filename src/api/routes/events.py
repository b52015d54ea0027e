"""Event log routes: paged queries, retention cleanup and the live SSE stream."""

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from src.api.dependencies import get_publisher
from src.core.services import EventFilter, EventPublisher, stream_events
from src.core.utils.time import to_naive_utc

router = APIRouter(prefix="/events", tags=["events"])


def _event_filter(
    execution_id: uuid.UUID | None,
    batch_id: uuid.UUID | None,
    job_id: uuid.UUID | None,
    types: list[str] | None = None,
) -> EventFilter:
    return EventFilter(
        execution_id=execution_id,
        batch_id=batch_id,
        job_id=job_id,
        types=tuple(types or ()),
    )


@router.get("")
async def list_events(
    execution_id: uuid.UUID | None = Query(default=None, alias="executionId"),
    batch_id: uuid.UUID | None = Query(default=None, alias="batchId"),
    job_id: uuid.UUID | None = Query(default=None, alias="jobId"),
    types: list[str] | None = Query(default=None, alias="type"),
    since: datetime | None = None,
    until: datetime | None = None,
    cursor: int | None = Query(default=None, ge=0),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    publisher: EventPublisher = Depends(get_publisher),
) -> dict[str, Any]:
    """
    Page through the event log in ascending id order.

    Poll with ``cursor`` set to the last id seen (``pagination.nextCursor``)
    to receive only newer events.
    """
    page = await publisher.query(
        _event_filter(execution_id, batch_id, job_id, types),
        since=to_naive_utc(since),
        until=to_naive_utc(until),
        after_id=cursor,
        limit=limit,
        offset=offset,
    )
    return page.to_dict()


@router.delete("")
async def delete_events(
    older_than: datetime = Query(alias="olderThan"),
    publisher: EventPublisher = Depends(get_publisher),
) -> dict[str, Any]:
    """Retention cleanup: delete events logged before ``olderThan``."""
    deleted = await publisher.delete_older_than(to_naive_utc(older_than))
    return {"deleted": deleted, "olderThan": older_than.isoformat()}


@router.get("/stream")
async def stream(
    request: Request,
    execution_id: uuid.UUID | None = Query(default=None, alias="executionId"),
    batch_id: uuid.UUID | None = Query(default=None, alias="batchId"),
    job_id: uuid.UUID | None = Query(default=None, alias="jobId"),
    last_event_id_query: str | None = Query(default=None, alias="lastEventId"),
    last_event_id_header: str | None = Header(default=None, alias="Last-Event-ID"),
    publisher: EventPublisher = Depends(get_publisher),
) -> StreamingResponse:
    """
    Server-sent event stream of live events.

    A reconnecting client sends ``Last-Event-ID`` (or ``lastEventId``) and
    first receives every logged event after that id.
    """
    raw_last_id = last_event_id_header or last_event_id_query
    last_event_id = None
    if raw_last_id:
        try:
            last_event_id = int(raw_last_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Last-Event-ID must be an integer") from None

    frames = stream_events(
        publisher,
        _event_filter(execution_id, batch_id, job_id),
        last_event_id=last_event_id,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
