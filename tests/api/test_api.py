"""
Tests for the REST API.

The app runs its real lifespan against a temporary sqlite database, with a
ScriptedAgent in place of the agent service. Executions progress in the
TestClient's event loop between requests, so tests poll for state.
"""

import time
import uuid

import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.core.agents.base import AgentResult
from src.core.config.settings import OrchestratorSettings
from src.core.primitives.failure_classifier import SELECTOR_NOT_FOUND
from src.core.storage.postgres import Database
from tests.conftest import ScriptedAgent, price_rows

BATCH_BODY = {
    "name": "Pricing",
    "goal": "Find the monthly price",
    "columnSchema": [
        {"name": "url", "type": "url", "isUrl": True},
        {"name": "price", "isGroundTruth": True},
    ],
}


def _client(database_config, agent: ScriptedAgent) -> TestClient:
    app = create_app(
        OrchestratorSettings(),
        db=Database(database_config),
        agent=agent,
        create_tables=True,
    )
    return TestClient(app)


@pytest.fixture
def client(database_config):
    """Client whose agent answers immediately."""
    with _client(database_config, ScriptedAgent()) as client:
        yield client


@pytest.fixture
def slow_client(database_config):
    """Client whose agent takes a while per job, so executions stay active."""
    with _client(database_config, ScriptedAgent(delay=1.0)) as client:
        yield client


def _create_batch(client: TestClient, count: int = 3) -> dict:
    response = client.post("/batches", json={**BATCH_BODY, "rows": price_rows(count)})
    assert response.status_code == 201
    return response.json()


def _create_execution(client: TestClient, batch_id: str, **body) -> dict:
    response = client.post("/executions", json={"batchId": batch_id, **body})
    assert response.status_code == 201, response.text
    return response.json()


def _poll(fetch, predicate, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while True:
        value = fetch()
        if predicate(value):
            return value
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not met before timeout: {value}")
        time.sleep(0.05)


def _wait_for_status(client: TestClient, execution_id: str, status: str) -> dict:
    return _poll(
        lambda: client.get(f"/executions/{execution_id}").json(),
        lambda execution: execution["status"] == status,
    )


def _wait_for_event(client: TestClient, execution_id: str, event_type: str) -> dict:
    return _poll(
        lambda: client.get(
            "/events", params={"executionId": execution_id, "type": event_type}
        ).json(),
        lambda page: page["events"],
    )


class TestHealth:
    """Tests for the probes and the request id middleware."""

    def test_live(self, client: TestClient):
        """Liveness always answers ok."""
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client: TestClient):
        """Readiness reports the database check."""
        response = client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["checks"] == {"database": True}
        assert body["activeExecutions"] == 0

    def test_request_id_is_echoed(self, client: TestClient):
        """A client-supplied request id comes back; otherwise one is generated."""
        echoed = client.get("/health/live", headers={"X-Request-ID": "req-123"})
        generated = client.get("/health/live")

        assert echoed.headers["X-Request-ID"] == "req-123"
        assert generated.headers["X-Request-ID"]


class TestBatches:
    """Tests for batch routes."""

    def test_create_and_get(self, client: TestClient):
        """A created batch reports its jobs by status."""
        batch = _create_batch(client, 3)

        assert batch["totalJobs"] == 3
        assert batch["groundTruthColumns"] == ["price"]
        assert batch["hasGroundTruth"] is True

        response = client.get(f"/batches/{batch['id']}")
        assert response.status_code == 200
        assert response.json()["jobCounts"]["queued"] == 3

    def test_list_jobs(self, client: TestClient):
        """Jobs come back in row order and can be filtered by status."""
        batch = _create_batch(client, 3)

        body = client.get(f"/batches/{batch['id']}/jobs", params={"status": "queued"}).json()

        assert [job["rowIndex"] for job in body["jobs"]] == [0, 1, 2]
        assert body["jobs"][0]["siteUrl"] == "https://shop0.example.com"

    def test_invalid_batch(self, client: TestClient):
        """Schema problems are reported as 422 invalid_batch."""
        body = {
            **BATCH_BODY,
            "columnSchema": [{"name": "url", "isUrl": True}, {"name": "url"}],
            "rows": price_rows(1),
        }

        response = client.post("/batches", json=body)

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_batch"
        assert "Duplicate column name" in response.json()["message"]

    def test_request_validation_error(self, client: TestClient):
        """Malformed bodies are 422 validation_error with the field errors."""
        response = client.post("/batches", json={"name": "", "columnSchema": [], "rows": []})

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["detail"]["errors"]
        assert body["request_id"]

    def test_unknown_batch(self, client: TestClient):
        """Unknown batches are 404."""
        response = client.get(f"/batches/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestExecutions:
    """Tests for execution routes."""

    def test_test_execution_runs_to_completion(self, client: TestClient):
        """A test execution runs its sample and reports a pass rate."""
        batch = _create_batch(client, 4)

        execution = _create_execution(client, batch["id"], sampleSize=2, concurrency=2)

        assert execution["executionType"] == "test"
        assert execution["totalJobs"] == 2
        _wait_for_status(client, execution["id"], "completed")
        stats = client.get(f"/executions/{execution['id']}/stats").json()
        assert stats["completedJobs"] == 2
        assert stats["progressPercentage"] == 100.0
        assert stats["passRate"] == 100.0
        assert stats["runningJobsList"] == []

    def test_commands(self, slow_client: TestClient):
        """Pause, resume, concurrency change and stop through the API."""
        batch = _create_batch(slow_client, 5)
        execution = _create_execution(
            slow_client, batch["id"], executionType="production", concurrency=1
        )
        execution_id = execution["id"]

        paused = slow_client.post(f"/executions/{execution_id}/pause")
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"

        resumed = slow_client.post(f"/executions/{execution_id}/resume")
        assert resumed.json()["status"] == "running"

        updated = slow_client.patch(f"/executions/{execution_id}", json={"concurrency": 3})
        assert updated.status_code == 200
        assert updated.json()["concurrency"] == 3

        stopped = slow_client.post(f"/executions/{execution_id}/stop", json={"reason": "enough"})
        assert stopped.status_code == 200
        assert stopped.json()["status"] == "stopped"
        assert stopped.json()["stopReason"] == "enough"

    def test_invalid_transition_is_conflict(self, slow_client: TestClient):
        """Commands on a stopped execution are 409 with the current state."""
        batch = _create_batch(slow_client, 2)
        execution = _create_execution(slow_client, batch["id"], executionType="production")
        slow_client.post(f"/executions/{execution['id']}/stop")

        response = slow_client.post(f"/executions/{execution['id']}/pause")

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "invalid_transition"
        assert body["detail"]["current"]["status"] == "stopped"

    def test_one_active_execution_per_batch(self, slow_client: TestClient):
        """A second execution for a busy batch is 409 naming the active one."""
        batch = _create_batch(slow_client, 3)
        first = _create_execution(slow_client, batch["id"], sampleSize=1)

        response = slow_client.post("/executions", json={"batchId": batch["id"]})

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "active_execution_exists"
        assert body["detail"]["activeExecution"]["id"] == first["id"]
        active = slow_client.get(f"/batches/{batch['id']}/active-execution").json()
        assert active["execution"]["id"] == first["id"]

    def test_concurrency_bounds(self, client: TestClient):
        """Concurrency outside 1..20 is a validation error."""
        batch = _create_batch(client, 1)

        response = client.post("/executions", json={"batchId": batch["id"], "concurrency": 0})

        assert response.status_code == 422

    def test_unknown_execution(self, client: TestClient):
        """Unknown executions are 404 for reads and commands."""
        unknown = uuid.uuid4()

        assert client.get(f"/executions/{unknown}").status_code == 404
        assert client.post(f"/executions/{unknown}/pause").status_code == 404


class TestEvents:
    """Tests for the event log routes."""

    def test_paginate_with_cursor(self, client: TestClient):
        """Polling with nextCursor only returns newer events."""
        batch = _create_batch(client, 2)
        execution = _create_execution(client, batch["id"], sampleSize=2)
        _wait_for_event(client, execution["id"], "execution.completed")

        first = client.get("/events", params={"executionId": execution["id"], "limit": 2}).json()

        assert len(first["events"]) == 2
        assert first["events"][0]["type"] == "execution.started"
        assert first["pagination"]["hasMore"] is True
        cursor = first["pagination"]["nextCursor"]

        rest = client.get(
            "/events", params={"executionId": execution["id"], "cursor": cursor}
        ).json()
        assert rest["events"]
        assert all(event["id"] > cursor for event in rest["events"])
        assert rest["events"][-1]["type"] == "execution.completed"

    def test_filter_by_type(self, client: TestClient):
        """Repeated type parameters select several event types."""
        batch = _create_batch(client, 2)
        execution = _create_execution(client, batch["id"], sampleSize=2)
        _wait_for_event(client, execution["id"], "execution.completed")

        page = client.get(
            "/events",
            params=[
                ("executionId", execution["id"]),
                ("type", "job.started"),
                ("type", "job.completed"),
            ],
        ).json()

        assert {event["type"] for event in page["events"]} == {"job.started", "job.completed"}
        assert page["pagination"]["total"] == 4

    def test_delete_older_than(self, client: TestClient):
        """Retention cleanup removes events logged before the cutoff."""
        batch = _create_batch(client, 1)
        execution = _create_execution(client, batch["id"], sampleSize=1)
        _wait_for_event(client, execution["id"], "execution.completed")

        response = client.delete("/events", params={"olderThan": "2999-01-01T00:00:00Z"})

        assert response.status_code == 200
        assert response.json()["deleted"] > 0
        remaining = client.get("/events", params={"executionId": execution["id"]}).json()
        assert remaining["events"] == []


class TestGroundTruth:
    """Tests for metrics, snapshots and failure patterns."""

    def test_column_metrics_and_trends(self, client: TestClient):
        """A completed execution yields metrics and an automatic snapshot."""
        batch = _create_batch(client, 2)
        execution = _create_execution(client, batch["id"], sampleSize=2)
        _wait_for_event(client, execution["id"], "execution.completed")

        metrics = client.get(f"/batches/{batch['id']}/ground-truth/column-metrics").json()
        [price] = metrics["columns"]
        assert price["columnName"] == "price"
        assert price["exactMatches"] == 2
        assert price["accuracyPercentage"] == 100.0

        snapshot = client.post(
            f"/batches/{batch['id']}/ground-truth/snapshot", json={"notes": "manual"}
        )
        assert snapshot.status_code == 201

        trends = client.get(f"/batches/{batch['id']}/ground-truth/trends")
        assert trends.status_code == 200

    def test_failure_patterns(self, database_config):
        """Failed jobs are grouped by category."""
        failure = AgentResult(error="Could not find element .price")
        agent = ScriptedAgent(script={"https://shop0.example.com": [failure]})
        with _client(database_config, agent) as client:
            batch = _create_batch(client, 2)
            execution = _create_execution(client, batch["id"], sampleSize=2)
            _wait_for_event(client, execution["id"], "execution.completed")

            report = client.get(f"/batches/{batch['id']}/failure-patterns").json()

        assert report["totalFailures"] == 1
        assert report["patterns"][0]["category"] == SELECTOR_NOT_FOUND


class TestJobs:
    """Tests for job routes."""

    def test_job_and_sessions(self, client: TestClient):
        """A finished job lists the session that ran it."""
        batch = _create_batch(client, 1)
        execution = _create_execution(client, batch["id"], sampleSize=1)
        _wait_for_status(client, execution["id"], "completed")
        [job] = client.get(f"/batches/{batch['id']}/jobs").json()["jobs"]

        detail = client.get(f"/jobs/{job['id']}").json()
        sessions = client.get(f"/jobs/{job['id']}/sessions").json()["sessions"]

        assert detail["status"] == "completed"
        assert detail["evaluationResult"] == "pass"
        assert [s["id"] for s in sessions] == [detail["latestSessionId"]]

    def test_bulk_update_rerun_and_delete(self, client: TestClient):
        """Bulk edits, a rerun execution and a delete on finished jobs."""
        batch = _create_batch(client, 2)
        execution = _create_execution(client, batch["id"], sampleSize=2)
        _wait_for_event(client, execution["id"], "execution.completed")
        job_ids = [job["id"] for job in client.get(f"/batches/{batch['id']}/jobs").json()["jobs"]]

        updated = client.patch(
            "/jobs/bulk", json={"jobIds": job_ids, "updates": {"goal": "Find the annual price"}}
        )
        assert updated.json() == {"updated": 2}

        rerun = client.post("/jobs/bulk", json={"jobIds": job_ids})
        assert rerun.status_code == 201
        assert rerun.json()["rerun"] == 2
        rerun_id = rerun.json()["execution"]["id"]
        assert rerun.json()["execution"]["executionType"] == "production"
        _wait_for_event(client, rerun_id, "execution.completed")

        deleted = client.request("DELETE", "/jobs/bulk", json={"jobIds": job_ids[:1]})
        assert deleted.json() == {"deleted": 1}
        assert client.get(f"/batches/{batch['id']}").json()["totalJobs"] == 1

    def test_bulk_rejects_unknown_jobs(self, client: TestClient):
        """A bulk request naming unknown jobs is 409 with per-job reasons."""
        unknown = str(uuid.uuid4())

        response = client.request("DELETE", "/jobs/bulk", json={"jobIds": [unknown]})

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "bulk_rejected"
        assert body["detail"]["rejected"] == [{"jobId": unknown, "reason": "Job not found"}]
