"""
HTTP agent client.

Talks to a remote browser-automation service:
- ``POST /runs`` starts a run and returns ``{"runId": ...}``
- ``GET /runs/{runId}/events`` streams the run as server-sent events whose
  ``data:`` lines carry ``{"type": "progress" | "completed" | "failed", ...}``
- ``DELETE /runs/{runId}`` cancels a run
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from src.core.agents.base import (
    AgentProgress,
    AgentRateLimited,
    AgentRejected,
    AgentRequest,
    AgentResult,
    AgentTimeout,
    AgentUnreachable,
    BaseAgent,
    ProgressCallback,
)

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"


class HttpAgent(BaseAgent):
    """
    Agent backend that runs tasks on a remote service over HTTP.

    Usage:
        agent = HttpAgent("http://agent:8080", api_key="...")
        result = await agent.run(request, on_progress=callback)
        await agent.close()
    """

    name = "http"
    supports_cancellation = True

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        request_timeout: float = 30.0,
        run_timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.run_timeout = run_timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(request_timeout, read=run_timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        """Translate an HTTP error status into an agent error."""
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            raise AgentRateLimited()
        if status >= 500:
            raise AgentUnreachable(
                f"Agent service unavailable: network error (HTTP {status})"
            )
        if status in (401, 403):
            raise AgentRejected(f"Agent rejected request: HTTP {status} unauthorized")
        try:
            detail = response.json().get("detail") or response.text
        except (ValueError, AttributeError):
            detail = response.text
        raise AgentRejected(f"Agent rejected task (HTTP {status}): {detail}")

    async def _start_run(self, request: AgentRequest) -> str:
        response = await self._client.post(
            "/runs",
            json={
                "jobId": request.job_id,
                "url": request.url,
                "goal": request.goal,
                "columnSchema": request.column_schema,
            },
        )
        self._raise_for_status(response)
        run_id = response.json().get("runId")
        if not run_id:
            raise AgentRejected("Agent response missing runId: invalid format")
        return str(run_id)

    async def _follow_run(
        self, run_id: str, on_progress: ProgressCallback | None
    ) -> AgentResult:
        log_lines: list[str] = []
        async with self._client.stream("GET", f"/runs/{run_id}/events") as response:
            if response.status_code >= 400:
                await response.aread()
                self._raise_for_status(response)

            async for line in response.aiter_lines():
                if not line.startswith(SSE_DATA_PREFIX):
                    continue
                try:
                    event: dict[str, Any] = json.loads(line[len(SSE_DATA_PREFIX):].strip())
                except json.JSONDecodeError:
                    logger.debug(f"Skipping undecodable agent event for run {run_id}")
                    continue

                event_type = event.get("type")
                if event_type == "progress":
                    step = str(event.get("step") or "")
                    log_lines.append(step)
                    if on_progress is not None:
                        await on_progress(
                            AgentProgress(step=step, percentage=event.get("percentage"))
                        )
                elif event_type == "completed":
                    return AgentResult(
                        extracted_fields=event.get("result") or {},
                        raw_log=event.get("log") or "\n".join(log_lines),
                        run_id=run_id,
                    )
                elif event_type == "failed":
                    return AgentResult(
                        extracted_fields=None,
                        raw_log=event.get("log") or "\n".join(log_lines),
                        error=str(event.get("error") or "Agent run failed"),
                        run_id=run_id,
                    )

        raise AgentUnreachable(
            f"Agent event stream closed before run {run_id} finished: connection lost"
        )

    async def _cancel_run(self, run_id: str) -> None:
        try:
            response = await self._client.delete(f"/runs/{run_id}")
            if response.status_code >= 400 and response.status_code != 404:
                logger.warning(f"Cancel of agent run {run_id} returned {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to cancel agent run {run_id}: {e}")

    async def run(
        self,
        request: AgentRequest,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResult:
        """Start a remote run and follow its event stream to completion."""
        run_id: str | None = None
        try:
            async with asyncio.timeout(self.run_timeout):
                run_id = await self._start_run(request)
                logger.debug(f"Agent run {run_id} started for job {request.job_id}")
                return await self._follow_run(run_id, on_progress)
        except TimeoutError as e:
            if run_id is not None:
                await self._cancel_run(run_id)
            raise AgentTimeout(
                f"Agent run timed out after {self.run_timeout:.0f}s"
            ) from e
        except httpx.TimeoutException as e:
            raise AgentTimeout(f"Agent request timed out: {e}") from e
        except httpx.TransportError as e:
            raise AgentUnreachable(f"Agent service unreachable: connection error ({e})") from e
        except asyncio.CancelledError:
            if run_id is not None:
                await asyncio.shield(self._cancel_run(run_id))
            raise
