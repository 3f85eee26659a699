"""Background research job scheduler and processor.

Jobs live in the ``research_jobs`` table. This module keeps a process-local FIFO
of job ids and a counter of busy workers, so it is only safe with a single
server instance. Each job drives the research endpoint over HTTP and follows its
SSE stream.
"""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

import httpx
from loguru import logger

from app.config import settings
from app.errors import ErrorCategory, ResearchError, StreamTimeout
from app.models.events import DecodedEvent, EventType
from app.research_core.confidence import is_auto_approved
from app.services import database as db
from app.services import logger as log_service
from app.services.streaming import SSEDecoder

PENDING_BATCH = 10

RESEARCH_PATHS = {
    "port": "/api/ports/{id}/deep-research",
    "terminal": "/api/terminal-operators/{id}/deep-research",
}


def _clamp_progress(value: Any) -> int | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return int(max(0.0, min(100.0, number)))


def _error_from_event(data: dict[str, Any]) -> ResearchError:
    try:
        category = ErrorCategory(data.get("category"))
    except ValueError:
        category = ErrorCategory.JOB_ERROR
    return ResearchError(
        category,
        str(data.get("message") or "Research failed"),
        original_error=data.get("originalError"),
        retryable=bool(data.get("retryable", False)),
    )


def auto_apply_fields(proposals: list[dict[str, Any]]) -> list[str]:
    """Fields confident enough to apply without review."""
    fields: list[str] = []
    for proposal in proposals:
        if not isinstance(proposal, dict) or not proposal.get("shouldUpdate"):
            continue
        try:
            confidence = float(proposal.get("confidence") or 0)
        except (TypeError, ValueError):
            continue
        if not is_auto_approved(confidence):
            continue
        name = proposal.get("field")
        if not isinstance(name, str):
            continue
        fields.append(name)
        if name == "coordinates":
            fields.extend(("latitude", "longitude"))
    return fields


class JobRun:
    """State of one job while its research stream is being read."""

    def __init__(self, job: dict[str, Any]):
        self.job_id = job["id"]
        self.job_type = job["type"]
        self.entity_id = job["entityId"]
        self.progress = 0
        self.preview: dict[str, Any] | None = None
        self.completed = False

    @property
    def path(self) -> str:
        return RESEARCH_PATHS[self.job_type].format(id=self.entity_id)

    async def handle(self, event: DecodedEvent) -> None:
        if event.event == EventType.STATUS.value:
            value = _clamp_progress(event.data.get("progress"))
            if value is not None and value > self.progress:
                self.progress = value
                await db.update_job_progress(self.job_id, value)
        elif event.event == EventType.PREVIEW.value:
            self.preview = event.data
            self.completed = await db.complete_job(self.job_id)
            self.progress = 100
        elif event.event == EventType.ERROR.value:
            if self.preview is None:
                raise _error_from_event(event.data)
            logger.warning(f"Job {self.job_id}: error after results: {event.data.get('message')}")


class JobScheduler:
    """Owns the FIFO of job ids, the busy-worker counter and the processing flag."""

    def __init__(
        self,
        max_concurrent: int | None = None,
        rate_limit_delay_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_concurrent = max_concurrent or settings.max_concurrent_jobs
        self.rate_limit_delay_s = settings.rate_limit_delay_s if rate_limit_delay_s is None else rate_limit_delay_s
        self.transport = transport
        self.queue: deque[str] = deque()
        self.active = 0
        self.processing = False
        self._workers: set[asyncio.Task] = set()

    @property
    def at_capacity(self) -> bool:
        return self.active >= self.max_concurrent

    def enqueue(self, job_ids: list[str]) -> int:
        added = 0
        for job_id in job_ids:
            if job_id not in self.queue:
                self.queue.append(job_id)
                added += 1
        return added

    async def sweep_stale(self) -> list[str]:
        try:
            stale = await db.fail_stale_jobs(settings.stale_job_minutes)
        except Exception as exc:
            logger.error(f"Stale job sweep failed: {exc}")
            return []
        if stale:
            log_service.log_event("stale_jobs", f"Marked {len(stale)} stale job(s) as failed", job_ids=stale)
        return stale

    async def process(self) -> None:
        """Sweep, pull pending jobs into the queue and start workers up to the cap."""
        if self.processing and self.at_capacity:
            return

        await self.sweep_stale()
        try:
            pending = await db.list_pending_job_ids(PENDING_BATCH)
        except Exception as exc:
            logger.error(f"Could not load pending jobs: {exc}")
            return
        self.enqueue(pending)

        slots = min(self.max_concurrent - self.active, len(self.queue))
        for _ in range(max(slots, 0)):
            self.processing = True
            self.active += 1
            task = asyncio.create_task(self._worker())
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)

    async def wait_idle(self) -> None:
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

    async def _worker(self) -> None:
        try:
            while self.queue:
                job_id = self.queue.popleft()
                await asyncio.sleep(self.rate_limit_delay_s)
                try:
                    await self.dispatch(job_id)
                except Exception as exc:
                    logger.error(f"Job {job_id} crashed in dispatch: {exc!r}")
        finally:
            self.active -= 1
            if self.active <= 0:
                self.active = 0
                self.processing = False

    async def dispatch(self, job_id: str) -> None:
        job = await db.get_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} vanished before processing")
            return
        if job["status"] != "pending":
            logger.info(f"Skipping job {job_id}: status is {job['status']}")
            return
        if job["type"] not in RESEARCH_PATHS:
            if await db.claim_job(job_id):
                await db.fail_job(job_id, f"Unknown job type: {job['type']}")
            return
        await self.run_job(job)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.internal_base_url,
            timeout=httpx.Timeout(10.0, read=None),
            transport=self.transport,
        )

    async def run_job(self, job: dict[str, Any]) -> None:
        job_id = job["id"]
        if await db.claim_job(job_id) is None:
            logger.info(f"Job {job_id} was claimed elsewhere")
            return

        run = JobRun(job)
        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            async with self._client() as client:
                await self._follow_stream(client, run)
                if run.preview is None:
                    raise ResearchError(ErrorCategory.JOB_ERROR, "Research stream ended without results")
                if run.job_type == "terminal":
                    await self._auto_apply(client, run)
        except Exception as exc:
            message = exc.message if isinstance(exc, ResearchError) else str(exc) or type(exc).__name__
            if run.completed:
                logger.error(f"Job {job_id} error after completion (ignored): {message}")
            else:
                await db.fail_job(job_id, message)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(settings.heartbeat_interval_s)
            try:
                await db.touch_job_heartbeat(job_id)
            except Exception as exc:
                logger.warning(f"Heartbeat write failed for job {job_id}: {exc}")

    async def _follow_stream(self, client: httpx.AsyncClient, run: JobRun) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.stream_total_timeout_s
        decoder = SSEDecoder()

        async with client.stream(
            "POST",
            run.path,
            params={"background": "true"},
            headers={"X-Background-Mode": "true", "Accept": "text/event-stream"},
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise ResearchError(
                    ErrorCategory.JOB_ERROR,
                    f"Research failed: {response.status_code} {body[:500]}",
                )

            chunks = response.aiter_text()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StreamTimeout(
                        f"Research stream exceeded total timeout of {settings.stream_total_timeout_s:.0f}s"
                    )
                budget = min(settings.stream_read_timeout_s, remaining)
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=budget)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    if budget < settings.stream_read_timeout_s:
                        raise StreamTimeout(
                            f"Research stream exceeded total timeout of {settings.stream_total_timeout_s:.0f}s"
                        ) from None
                    raise StreamTimeout(
                        f"No data from research stream for {settings.stream_read_timeout_s:.0f}s"
                    ) from None
                for event in decoder.feed(chunk):
                    await run.handle(event)

            for event in decoder.flush():
                await run.handle(event)

    async def _auto_apply(self, client: httpx.AsyncClient, run: JobRun) -> None:
        proposals = run.preview.get("field_proposals") or []
        fields = auto_apply_fields(proposals)
        if not fields:
            return
        try:
            response = await client.patch(
                f"{run.path}/apply",
                json={"data_to_update": run.preview.get("data_to_update") or {}, "approved_fields": fields},
            )
            response.raise_for_status()
            log_service.log_event("auto_apply", f"Auto-applied {len(fields)} field(s)", job_id=run.job_id, fields=fields)
        except httpx.HTTPError as exc:
            logger.error(f"Auto-apply failed for job {run.job_id}: {exc!r}")


_scheduler: JobScheduler | None = None


def get_scheduler() -> JobScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler()
    return _scheduler


async def process_job_queue() -> None:
    await get_scheduler().process()


async def enqueue_jobs(job_type: str, entity_ids: list[str], cluster_id: str | None = None) -> list[str]:
    return await db.create_jobs(job_type, entity_ids, cluster_id)
