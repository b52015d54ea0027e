"""Tests for the event publisher, event log queries and the SSE stream."""

import asyncio
import json
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from src.core.config.settings import EventSettings
from src.core.models.orchestration import EventType, ExecutionEvent
from src.core.services.events import (
    EventFilter,
    EventPublisher,
    SubscriptionClosed,
    format_sse,
    stream_events,
)
from src.core.storage.postgres import Database
from src.core.utils.time import utcnow_naive


@pytest_asyncio.fixture
async def publisher(database: Database) -> EventPublisher:
    """Publisher without a broker."""
    publisher = EventPublisher(database, EventSettings(default_page_size=2, max_page_size=5))
    await publisher.start()
    yield publisher
    await publisher.stop()


def _frames(raw: str) -> dict:
    fields = {}
    for line in raw.strip().splitlines():
        key, _, value = line.partition(": ")
        fields[key] = value
    return fields


class TestPublish:
    """Tests for publishing and querying the log."""

    @pytest.mark.asyncio
    async def test_publish_assigns_increasing_ids(self, publisher: EventPublisher):
        """Events get increasing integer ids and serialized fields."""
        execution_id, batch_id, job_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

        first = await publisher.publish(
            EventType.JOB_STARTED,
            execution_id=execution_id,
            batch_id=batch_id,
            job_id=job_id,
            payload={"siteUrl": "https://a.example.com"},
        )
        second = await publisher.publish("job.completed", execution_id=execution_id)

        assert second["id"] > first["id"]
        assert first["type"] == "job.started"
        assert first["executionId"] == str(execution_id)
        assert first["batchId"] == str(batch_id)
        assert first["jobId"] == str(job_id)
        assert first["payload"] == {"siteUrl": "https://a.example.com"}
        assert first["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_query_filters_and_paginates(self, publisher: EventPublisher):
        """Filters narrow the log; pagination reports totals and a cursor."""
        execution_id = uuid.uuid4()
        for _ in range(3):
            await publisher.publish("job.started", execution_id=execution_id)
        await publisher.publish("job.failed", execution_id=execution_id)
        await publisher.publish("job.started", execution_id=uuid.uuid4())

        page = await publisher.query(EventFilter(execution_id=execution_id))
        assert page.total == 4
        assert len(page.events) == 2
        assert page.has_more

        rest = await publisher.query(
            EventFilter(execution_id=execution_id), after_id=page.next_cursor, limit=10
        )
        assert [e["type"] for e in rest.events] == ["job.started", "job.failed"]
        assert rest.limit == 5
        assert not rest.has_more

        failed = await publisher.query(
            EventFilter(execution_id=execution_id, types=("job.failed",))
        )
        assert failed.total == 1

    @pytest.mark.asyncio
    async def test_query_time_window(self, publisher: EventPublisher):
        """since/until bound the creation time."""
        await publisher.publish("job.started")
        future = utcnow_naive() + timedelta(hours=1)

        assert (await publisher.query(since=future)).total == 0
        assert (await publisher.query(until=future)).total == 1

    @pytest.mark.asyncio
    async def test_page_dict_shape(self, publisher: EventPublisher):
        """to_dict() carries events and pagination."""
        await publisher.publish("job.started")
        data = (await publisher.query()).to_dict()

        assert set(data) == {"events", "pagination"}
        assert data["pagination"]["total"] == 1
        assert data["pagination"]["hasMore"] is False

    @pytest.mark.asyncio
    async def test_delete_older_than(self, publisher: EventPublisher, database: Database):
        """Retention cleanup removes only events before the cutoff."""
        old = await publisher.publish("job.started")
        await publisher.publish("job.completed")
        async with database.session() as session:
            await session.execute(
                update(ExecutionEvent)
                .where(ExecutionEvent.id == old["id"])
                .values(created_at=utcnow_naive() - timedelta(days=40))
            )

        deleted = await publisher.delete_older_than(utcnow_naive() - timedelta(days=30))

        assert deleted == 1
        remaining = await publisher.query()
        assert [e["type"] for e in remaining.events] == ["job.completed"]


class TestSubscriptions:
    """Tests for live delivery."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_in_order(self, publisher: EventPublisher):
        """A subscriber sees matching events in log order."""
        batch_id = uuid.uuid4()
        subscription = publisher.subscribe(EventFilter(batch_id=batch_id))

        await publisher.publish("job.started", batch_id=batch_id)
        await publisher.publish("job.started", batch_id=uuid.uuid4())
        await publisher.publish("job.completed", batch_id=batch_id)

        first = await subscription.next(timeout=1)
        second = await subscription.next(timeout=1)
        assert [first["type"], second["type"]] == ["job.started", "job.completed"]
        assert await subscription.next(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_closed(self, database: Database):
        """A subscriber whose queue fills up is dropped, not blocked on."""
        publisher = EventPublisher(database, EventSettings(subscriber_queue_size=2))
        subscription = publisher.subscribe()

        for _ in range(3):
            await publisher.publish("job.progress")

        assert subscription.closed
        assert publisher.subscriber_count == 0
        with pytest.raises(SubscriptionClosed):
            await subscription.next(timeout=1)

    @pytest.mark.asyncio
    async def test_broker_delivery(self, database: Database):
        """With a broker, events reach local subscribers through it."""

        class LoopbackBroker:
            def __init__(self):
                self.queue = asyncio.Queue()

            async def publish(self, message):
                await self.queue.put(message)
                return 1

            async def listen(self):
                while True:
                    yield await self.queue.get()

        broker = LoopbackBroker()
        publisher = EventPublisher(database, broker=broker)
        await publisher.start()
        try:
            subscription = publisher.subscribe()
            event = await publisher.publish("execution.started")
            received = await subscription.next(timeout=1)
        finally:
            await publisher.stop()

        assert received == event


class TestStream:
    """Tests for the SSE stream generator."""

    def test_format_sse(self):
        """Frames carry id, event name and JSON data."""
        frame = format_sse({"id": 4, "type": "job.started"})
        fields = _frames(frame)

        assert frame.endswith("\n\n")
        assert fields["id"] == "4"
        assert fields["event"] == "job.started"
        assert json.loads(fields["data"]) == {"id": 4, "type": "job.started"}

    @pytest.mark.asyncio
    async def test_replay_then_live_then_heartbeat(self, publisher: EventPublisher):
        """The stream replays after Last-Event-ID, then forwards live events."""
        execution_id = uuid.uuid4()
        seen = await publisher.publish("job.started", execution_id=execution_id)
        missed = await publisher.publish("job.completed", execution_id=execution_id)

        stream = stream_events(
            publisher,
            EventFilter(execution_id=execution_id),
            last_event_id=seen["id"],
            heartbeat_seconds=0.05,
        )
        try:
            connected = _frames(await stream.__anext__())
            assert connected["event"] == "connected"

            replayed = _frames(await stream.__anext__())
            assert replayed["id"] == str(missed["id"])

            live = await publisher.publish("execution.completed", execution_id=execution_id)
            assert _frames(await stream.__anext__())["id"] == str(live["id"])

            heartbeat = _frames(await stream.__anext__())
            assert heartbeat["event"] == "heartbeat"
        finally:
            await stream.aclose()

        assert publisher.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_frames_carry_type_and_data(self, publisher: EventPublisher):
        """Every frame names its type; event frames carry the payload as ``data``."""
        execution_id = uuid.uuid4()
        stream = stream_events(
            publisher, EventFilter(execution_id=execution_id), heartbeat_seconds=0.05
        )
        try:
            connected = json.loads(_frames(await stream.__anext__())["data"])
            assert connected["type"] == "connected"

            await publisher.publish(
                "job.completed", execution_id=execution_id, payload={"retryCount": 1}
            )
            event = json.loads(_frames(await stream.__anext__())["data"])
            assert set(event) == {
                "id", "type", "timestamp", "data", "executionId", "batchId", "jobId"
            }
            assert event["type"] == "job.completed"
            assert event["data"] == {"retryCount": 1}
            assert event["executionId"] == str(execution_id)

            heartbeat = json.loads(_frames(await stream.__anext__())["data"])
            assert heartbeat["type"] == "heartbeat"
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_live_events_from_two_executions_out_of_id_order(
        self, publisher: EventPublisher
    ):
        """A batch stream delivers a lower id that arrives after a higher one."""
        batch_id = uuid.uuid4()
        old_run, new_run = uuid.uuid4(), uuid.uuid4()

        def logged(event_id: int, event_type: str, execution_id: uuid.UUID) -> dict:
            return {
                "id": event_id,
                "type": event_type,
                "executionId": str(execution_id),
                "batchId": str(batch_id),
                "jobId": None,
                "timestamp": "2026-01-01T00:00:00Z",
                "payload": {},
            }

        stream = stream_events(publisher, EventFilter(batch_id=batch_id), heartbeat_seconds=0.05)
        try:
            await stream.__anext__()

            publisher._fan_out(logged(11, "execution.started", new_run))
            publisher._fan_out(logged(10, "job.completed", old_run))

            first = _frames(await stream.__anext__())
            second = _frames(await stream.__anext__())
        finally:
            await stream.aclose()

        assert [first["event"], second["event"]] == ["execution.started", "job.completed"]
        assert second["id"] == "10"

    @pytest.mark.asyncio
    async def test_replayed_event_is_not_sent_twice(self, publisher: EventPublisher):
        """An event both replayed and delivered live appears once."""
        execution_id = uuid.uuid4()
        seen = await publisher.publish("job.started", execution_id=execution_id)

        stream = stream_events(
            publisher,
            EventFilter(execution_id=execution_id),
            last_event_id=seen["id"],
            heartbeat_seconds=0.05,
        )
        try:
            await stream.__anext__()
            # Committed after the subscription opened but before the replay ran
            both = await publisher.publish("job.completed", execution_id=execution_id)

            replayed = _frames(await stream.__anext__())
            after = _frames(await stream.__anext__())
        finally:
            await stream.aclose()

        assert replayed["id"] == str(both["id"])
        assert after["event"] == "heartbeat"
