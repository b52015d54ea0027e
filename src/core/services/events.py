"""
Event publisher: append-only execution event log plus live push channel.

Every event is written to the ``execution_events`` table first; its
autoincrement id is the cursor for polling and for stream replay. Live
subscribers receive events in log order through bounded in-memory queues.
With a pub/sub broker configured, local delivery happens through the
broker so every API process sees every event.
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy import delete, func, select

from src.core.config.settings import EventSettings
from src.core.models.orchestration import ExecutionEvent
from src.core.storage.base import BasePubSub
from src.core.storage.postgres import Database, get_db
from src.core.utils.time import to_iso, utcnow_naive

logger = logging.getLogger(__name__)


class SubscriptionClosed(Exception):
    """The subscription fell behind and was closed; reconnect with the last event id."""

    pass


_CLOSED = object()


def _as_uuid(value: Any) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass
class EventFilter:
    """Selects events by execution, batch, job and type."""

    execution_id: uuid.UUID | None = None
    batch_id: uuid.UUID | None = None
    job_id: uuid.UUID | None = None
    types: tuple[str, ...] = ()

    def matches(self, event: dict[str, Any]) -> bool:
        if self.execution_id is not None and event.get("executionId") != str(self.execution_id):
            return False
        if self.batch_id is not None and event.get("batchId") != str(self.batch_id):
            return False
        if self.job_id is not None and event.get("jobId") != str(self.job_id):
            return False
        if self.types and event.get("type") not in self.types:
            return False
        return True

    def apply(self, stmt):
        """Add WHERE clauses for this filter to a select over ExecutionEvent."""
        if self.execution_id is not None:
            stmt = stmt.where(ExecutionEvent.execution_id == self.execution_id)
        if self.batch_id is not None:
            stmt = stmt.where(ExecutionEvent.batch_id == self.batch_id)
        if self.job_id is not None:
            stmt = stmt.where(ExecutionEvent.job_id == self.job_id)
        if self.types:
            stmt = stmt.where(ExecutionEvent.event_type.in_(self.types))
        return stmt


@dataclass
class EventPage:
    """One page of the event log."""

    events: list[dict[str, Any]]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.events) < self.total

    @property
    def next_cursor(self) -> int | None:
        return self.events[-1]["id"] if self.events else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": self.events,
            "pagination": {
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "hasMore": self.has_more,
                "nextCursor": self.next_cursor,
            },
        }


@dataclass(eq=False)
class Subscription:
    """A live subscriber's bounded queue."""

    filter: EventFilter
    maxsize: int
    queue: asyncio.Queue = field(init=False)
    closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.maxsize + 1)

    def offer(self, event: dict[str, Any]) -> None:
        """Enqueue without blocking; a full queue closes the subscription."""
        if self.closed or not self.filter.matches(event):
            return
        if self.queue.qsize() >= self.maxsize:
            self.close()
            return
        self.queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSED)

    async def next(self, timeout: float) -> dict[str, Any] | None:
        """
        Wait for the next event.

        Returns None when nothing arrived within ``timeout`` seconds.
        Raises SubscriptionClosed once the subscription was closed.
        """
        try:
            item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except TimeoutError:
            return None
        if item is _CLOSED:
            raise SubscriptionClosed()
        return item


def serialize_event(row: ExecutionEvent) -> dict[str, Any]:
    return {
        "id": row.id,
        "type": row.event_type,
        "executionId": str(row.execution_id) if row.execution_id else None,
        "batchId": str(row.batch_id) if row.batch_id else None,
        "jobId": str(row.job_id) if row.job_id else None,
        "timestamp": to_iso(row.created_at),
        "payload": row.payload or {},
    }


class EventPublisher:
    """
    Append-only event log with pull and push access.

    Usage:
        publisher = EventPublisher(db, settings)
        await publisher.start()

        await publisher.publish("job.started", execution_id=..., job_id=...)
        page = await publisher.query(EventFilter(execution_id=...))

        subscription = publisher.subscribe(EventFilter(batch_id=...))
        event = await subscription.next(timeout=30)

        await publisher.stop()
    """

    def __init__(
        self,
        db: Database | None = None,
        settings: EventSettings | None = None,
        broker: BasePubSub | None = None,
    ) -> None:
        self._db = db
        self.settings = settings or EventSettings()
        self._broker = broker
        self._subscriptions: set[Subscription] = set()
        self._locks: defaultdict[Any, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._relay_task: asyncio.Task | None = None

    async def _get_db(self) -> Database:
        """Get the database instance, resolving lazily if needed."""
        if self._db is None:
            self._db = await get_db()
        return self._db

    async def start(self) -> None:
        """Start relaying broker messages to local subscribers."""
        if self._broker is not None and self._relay_task is None:
            self._relay_task = asyncio.create_task(self._relay())

    async def stop(self) -> None:
        """Stop the relay and close every subscription."""
        if self._relay_task is not None:
            self._relay_task.cancel()
            await asyncio.gather(self._relay_task, return_exceptions=True)
            self._relay_task = None
        for subscription in list(self._subscriptions):
            subscription.close()
        self._subscriptions.clear()

    async def _relay(self) -> None:
        while True:
            try:
                async for event in self._broker.listen():
                    self._fan_out(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event relay lost its broker connection: {e}", exc_info=True)
                await asyncio.sleep(1)

    def _fan_out(self, event: dict[str, Any]) -> None:
        for subscription in list(self._subscriptions):
            subscription.offer(event)
            if subscription.closed:
                logger.warning("Closing slow event subscriber")
                self._subscriptions.discard(subscription)

    async def publish(
        self,
        event_type: str,
        *,
        execution_id: uuid.UUID | None = None,
        batch_id: uuid.UUID | None = None,
        job_id: uuid.UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Append an event to the log and push it to subscribers.

        Writes and deliveries for one execution are serialized, so every
        subscriber sees that execution's events in log order.
        """
        db = await self._get_db()
        key = execution_id or batch_id
        async with self._locks[key]:
            row = ExecutionEvent(
                event_type=str(getattr(event_type, "value", event_type)),
                execution_id=_as_uuid(execution_id),
                batch_id=_as_uuid(batch_id),
                job_id=_as_uuid(job_id),
                payload=payload or {},
                created_at=utcnow_naive(),
            )
            async with db.session() as session:
                session.add(row)
                await session.flush()
                event = serialize_event(row)

            if self._broker is not None:
                try:
                    await self._broker.publish(event)
                except Exception as e:
                    logger.warning(f"Broker publish failed, delivering locally: {e}")
                    self._fan_out(event)
            else:
                self._fan_out(event)

        return event

    def release(self, execution_id: uuid.UUID) -> None:
        """Forget per-execution state once an execution is terminal."""
        self._locks.pop(execution_id, None)

    def subscribe(self, event_filter: EventFilter | None = None) -> Subscription:
        subscription = Subscription(
            filter=event_filter or EventFilter(),
            maxsize=self.settings.subscriber_queue_size,
        )
        self._subscriptions.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def query(
        self,
        event_filter: EventFilter | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        after_id: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> EventPage:
        """
        Page through the log in ascending id order.

        ``after_id`` is a cursor (the last id already seen); ``offset``
        skips rows after filtering.
        """
        event_filter = event_filter or EventFilter()
        limit = min(max(1, limit or self.settings.default_page_size), self.settings.max_page_size)
        offset = max(0, offset)

        stmt = event_filter.apply(select(ExecutionEvent))
        count_stmt = event_filter.apply(select(func.count()).select_from(ExecutionEvent))
        conditions = []
        if since is not None:
            conditions.append(ExecutionEvent.created_at >= since)
        if until is not None:
            conditions.append(ExecutionEvent.created_at <= until)
        if after_id is not None:
            conditions.append(ExecutionEvent.id > after_id)
        if conditions:
            stmt = stmt.where(*conditions)
            count_stmt = count_stmt.where(*conditions)

        db = await self._get_db()
        async with db.session() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            result = await session.execute(
                stmt.order_by(ExecutionEvent.id).offset(offset).limit(limit)
            )
            events = [serialize_event(row) for row in result.scalars()]

        return EventPage(events=events, total=total, limit=limit, offset=offset)

    async def replay(
        self, event_filter: EventFilter, after_id: int, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Events logged after ``after_id``, oldest first."""
        page = await self.query(
            event_filter, after_id=after_id, limit=limit or self.settings.max_page_size
        )
        return page.events

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Retention cleanup. Touches nothing but the event log."""
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                delete(ExecutionEvent).where(ExecutionEvent.created_at < cutoff)
            )
            deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} events older than {cutoff.isoformat()}")
        return deleted


def stream_frame(event: dict[str, Any]) -> dict[str, Any]:
    """Shape a logged event for the SSE stream, which carries ``data``."""
    return {
        "id": event["id"],
        "type": event["type"],
        "timestamp": event["timestamp"],
        "data": event.get("payload") or {},
        "executionId": event.get("executionId"),
        "batchId": event.get("batchId"),
        "jobId": event.get("jobId"),
    }


def format_sse(event: dict[str, Any] | None = None, event_name: str | None = None) -> str:
    """Render one server-sent event frame."""
    lines = []
    if event is not None and isinstance(event.get("id"), int):
        lines.append(f"id: {event['id']}")
    lines.append(f"event: {event_name or (event or {}).get('type', 'message')}")
    lines.append(f"data: {json.dumps(event or {})}")
    return "\n".join(lines) + "\n\n"


async def stream_events(
    publisher: EventPublisher,
    event_filter: EventFilter,
    last_event_id: int | None = None,
    heartbeat_seconds: float | None = None,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for a live subscription.

    Sends a ``connected`` frame, replays logged events after
    ``last_event_id``, then forwards live events and a ``heartbeat`` frame
    whenever the channel has been idle for ``heartbeat_seconds``.
    """
    heartbeat = heartbeat_seconds or publisher.settings.heartbeat_seconds
    # Subscribe before replaying so nothing falls between the two
    subscription = publisher.subscribe(event_filter)
    # Live events from different executions can arrive out of id order, so
    # only events already sent by the replay are dropped as duplicates
    replayed: set[int] = set()
    last_sent = last_event_id or 0
    try:
        yield format_sse(
            {
                "type": "connected",
                "timestamp": to_iso(utcnow_naive()),
                "lastEventId": last_event_id,
            },
            event_name="connected",
        )

        if last_event_id is not None:
            for event in await publisher.replay(event_filter, after_id=last_event_id):
                replayed.add(event["id"])
                last_sent = max(last_sent, event["id"])
                yield format_sse(stream_frame(event))

        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await subscription.next(timeout=heartbeat)
            except SubscriptionClosed:
                logger.info(f"Event stream closed after id {last_sent}; client should reconnect")
                break
            if event is None:
                yield format_sse(
                    {"type": "heartbeat", "timestamp": to_iso(utcnow_naive())},
                    event_name="heartbeat",
                )
                continue
            if event["id"] in replayed:
                replayed.discard(event["id"])
                continue
            last_sent = max(last_sent, event["id"])
            yield format_sse(stream_frame(event))
    finally:
        publisher.unsubscribe(subscription)
