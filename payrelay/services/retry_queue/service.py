"""Retry processor: replays due jobs and escalates exhausted ones.

Each invocation handles one bounded batch. Scheduling is external (CLI timer,
cron, or the optional in-app loop); invocations within a process are
serialized so a job is never fetched twice by overlapping cycles.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from payrelay.common.errors import StorageError
from payrelay.common.events import LiveEvent
from payrelay.common.logging import job_context, logger
from payrelay.common.metrics import retry_attempts_total
from payrelay.common.tracing import tracer
from payrelay.services.retry_queue.dead_letter import DeadLetterManager
from payrelay.services.retry_queue.models import RetryJob
from payrelay.services.retry_queue.store import JobStore


CompletionHook = Callable[[RetryJob, Any], Awaitable[None] | None]


@dataclass
class BatchResult:
    """Outcome counts for one processing cycle."""

    processed: int = 0
    completed: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    def record(self, outcome: str) -> None:
        self.processed += 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "rescheduled": self.rescheduled,
            "dead_lettered": self.dead_lettered,
            "skipped": self.skipped,
        }


def response_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "errorMessage", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def exception_message(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


class RetryProcessor:
    """Polls due jobs, executes their HTTP calls and records the outcome."""

    def __init__(
        self,
        store: JobStore,
        dead_letters: DeadLetterManager,
        broadcaster=None,
        batch_size: int = 10,
        concurrency: int = 3,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        completion_hooks: dict[str, CompletionHook] | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.dead_letters = dead_letters
        self.broadcaster = broadcaster
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.completion_hooks: dict[str, CompletionHook] = dict(completion_hooks or {})
        self.lease_seconds = lease_seconds
        self.service_name = store.service_name
        self._lock = asyncio.Lock()

    def register_completion_hook(self, job_type: str, hook: CompletionHook) -> None:
        """Run `hook(job, response_body)` after a job of `job_type` succeeds."""

        self.completion_hooks[job_type] = hook

    def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(LiveEvent(type=event_type, payload=payload))

    async def process_once(self) -> BatchResult:
        """Process up to `batch_size` due jobs; never raises for a single job."""

        async with self._lock:
            result = BatchResult()
            if self.lease_seconds:
                try:
                    self.store.reclaim_stale_processing(self.lease_seconds)
                except StorageError as exc:
                    logger.error("retry_reclaim_failed error=%s", exc)

            jobs = self.store.fetch_due(self.batch_size)
            logger.info("retry_batch_fetched count=%s", len(jobs))
            if not jobs:
                return result

            semaphore = asyncio.Semaphore(self.concurrency)
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:

                async def run(job: RetryJob) -> str:
                    async with semaphore:
                        try:
                            return await self._process_job(client, job)
                        except Exception:
                            logger.exception("retry_job_unhandled_error job_id=%s", job.id)
                            return "skipped"

                outcomes = await asyncio.gather(*(run(job) for job in jobs))

            for outcome in outcomes:
                result.record(outcome)
            try:
                self.store.update_backlog_metrics()
            except StorageError as exc:
                logger.warning("retry_backlog_metrics_failed error=%s", exc)
            logger.info("retry_batch_done %s", result.as_dict())
            return result

    async def _process_job(self, client: httpx.AsyncClient, job: RetryJob) -> str:
        with job_context(job.id, job.correlation_id):
            return await self._attempt(client, job)

    async def _attempt(self, client: httpx.AsyncClient, job: RetryJob) -> str:
        try:
            claimed = self.store.mark_processing(job.id)
        except StorageError as exc:
            logger.error("retry_job_claim_failed job_id=%s error=%s", job.id, exc)
            return "skipped"
        if not claimed:
            logger.info("retry_job_already_claimed job_id=%s", job.id)
            return "skipped"

        logger.info(
            "retry_job_processing job_id=%s job_type=%s retry_count=%s",
            job.id,
            job.job_type,
            job.current_retry,
        )
        try:
            response = await self._execute(client, job)
        except Exception as exc:
            return self._handle_failure(job, exception_message(exc))
        if 200 <= response.status_code < 300:
            return await self._handle_success(job, response)
        return self._handle_failure(job, response_error_message(response))

    async def _execute(self, client: httpx.AsyncClient, job: RetryJob) -> httpx.Response:
        payload = job.parsed_payload()
        kwargs: dict[str, Any] = {"headers": job.parsed_headers()}
        if payload is not None:
            kwargs["json"] = payload
        with tracer.start_as_current_span(
            "retry_job.execute",
            attributes={"retry.job_id": job.id, "retry.job_type": job.job_type, "retry.attempt": job.current_retry + 1},
        ) as span:
            response = await client.request(job.method, job.endpoint, **kwargs)
            span.set_attribute("http.status_code", response.status_code)
        return response

    async def _handle_success(self, job: RetryJob, response: httpx.Response) -> str:
        try:
            if not self.store.mark_completed(job.id):
                logger.warning("retry_job_complete_lost job_id=%s", job.id)
                return "skipped"
        except StorageError as exc:
            # Left in `processing`; only a configured lease reclaims it.
            logger.error("retry_job_complete_write_failed job_id=%s error=%s", job.id, exc)
            return "skipped"

        retry_attempts_total.labels(service=self.service_name, job_type=job.job_type, outcome="completed").inc()
        logger.info(
            "retry_job_completed job_id=%s job_type=%s status_code=%s",
            job.id,
            job.job_type,
            response.status_code,
        )
        hook = self.completion_hooks.get(job.job_type)
        if hook is not None:
            try:
                body = response.json()
            except ValueError:
                body = None
            try:
                outcome = hook(job, body)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("retry_completion_hook_failed job_id=%s job_type=%s", job.id, job.job_type)
        self._publish("retry:completed", {**job.to_dict(), "status": "completed", "status_code": response.status_code})
        return "completed"

    def _handle_failure(self, job: RetryJob, error: str) -> str:
        new_retry_count = job.current_retry + 1
        logger.warning(
            "retry_job_failed job_id=%s job_type=%s attempt=%s max_retries=%s error=%s",
            job.id,
            job.job_type,
            new_retry_count,
            job.max_retries,
            error,
        )
        try:
            if new_retry_count >= job.max_retries:
                self.dead_letters.move_to_dead_letter(job, error, new_retry_count=new_retry_count)
                outcome = "dead_lettered"
            else:
                delay_ms = self.store.backoff.delay_ms(new_retry_count)
                next_retry_at = self.store.now() + timedelta(milliseconds=delay_ms)
                if not self.store.reschedule(job.id, new_retry_count, next_retry_at, error):
                    logger.warning("retry_job_reschedule_lost job_id=%s", job.id)
                    return "skipped"
                logger.info(
                    "retry_job_rescheduled job_id=%s next_retry_at=%s delay_ms=%s",
                    job.id,
                    next_retry_at.isoformat(),
                    delay_ms,
                )
                outcome = "rescheduled"
        except StorageError as exc:
            logger.error("retry_job_failure_write_failed job_id=%s error=%s", job.id, exc)
            return "skipped"

        retry_attempts_total.labels(service=self.service_name, job_type=job.job_type, outcome=outcome).inc()
        self._publish(
            "retry:failed",
            {
                **job.to_dict(),
                "current_retry": new_retry_count,
                "last_error": error,
                "dead_letter": outcome == "dead_lettered",
            },
        )
        return outcome

    async def run_forever(self, interval_ms: int) -> None:
        """Run `process_once` every `interval_ms` until cancelled."""

        while True:
            try:
                await self.process_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("retry_cycle_error error=%s", exc)
            await asyncio.sleep(interval_ms / 1000)
