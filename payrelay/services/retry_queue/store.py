"""Durable retry-job table access.

Every status change is a single guarded UPDATE (`WHERE id = ? AND status = ?`)
so two processors can never both move the same job out of `pending`.
Database failures surface as `StorageError`; callers decide whether to skip
the job for this cycle.
"""

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from payrelay.common.backoff import BackoffPolicy
from payrelay.common.errors import StorageError
from payrelay.common.logging import logger
from payrelay.common.metrics import (
    retry_jobs_enqueued_total,
    retry_queue_oldest_pending_age_seconds,
    retry_queue_pending_total,
)
from payrelay.common.state_machine import validate_job_transition
from payrelay.services.retry_queue.models import JOB_STATUSES, DeadLetterItem, RetryJob


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobStore:
    """CRUD operations over `retry_queue` used by processor and dead-letter manager."""

    def __init__(
        self,
        session_factory,
        backoff: BackoffPolicy | None = None,
        now: Callable[[], datetime] = utc_now,
        service_name: str = "payrelay",
    ) -> None:
        self.session_factory = session_factory
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.now = now
        self.service_name = service_name

    @contextmanager
    def _session(self, db=None) -> Iterator[Any]:
        """Yield `db` when the caller owns the transaction, else a committed session."""

        if db is not None:
            try:
                yield db
            except SQLAlchemyError as exc:
                raise StorageError(f"retry queue storage failure: {exc}") from exc
            return
        try:
            with self.session_factory() as own:
                yield own
                own.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"retry queue storage failure: {exc}") from exc

    def enqueue(
        self,
        job_type: str,
        endpoint: str,
        method: str,
        headers: dict[str, str] | None,
        payload: Any,
        max_retries: int,
        correlation_id: str | None = None,
        db=None,
    ) -> RetryJob:
        """Insert a pending job due after the first backoff delay."""

        now = self.now()
        delay_ms = self.backoff.delay_ms(0)
        job = RetryJob(
            job_type=job_type,
            endpoint=endpoint,
            method=method.upper(),
            headers=json.dumps(headers or {}),
            payload=json.dumps(payload) if payload is not None else None,
            max_retries=max_retries,
            current_retry=0,
            next_retry_at=now + timedelta(milliseconds=delay_ms),
            status="pending",
            correlation_id=correlation_id,
            created_at=now,
            updated_at=now,
        )
        with self._session(db) as session:
            session.add(job)
            session.flush()
        retry_jobs_enqueued_total.labels(service=self.service_name, job_type=job_type).inc()
        logger.info(
            "retry_job_enqueued job_id=%s job_type=%s endpoint=%s correlation_id=%s next_retry_at=%s",
            job.id,
            job_type,
            endpoint,
            correlation_id,
            job.next_retry_at.isoformat(),
        )
        return job

    def get(self, job_id: int) -> RetryJob | None:
        with self._session() as db:
            return db.get(RetryJob, job_id)

    def fetch_due(self, limit: int = 10) -> list[RetryJob]:
        """Oldest-due pending jobs whose `next_retry_at` has passed."""

        with self._session() as db:
            return list(
                db.execute(
                    select(RetryJob)
                    .where(RetryJob.status == "pending", RetryJob.next_retry_at <= self.now())
                    .order_by(RetryJob.next_retry_at.asc(), RetryJob.id.asc())
                    .limit(limit)
                ).scalars()
            )

    def _transition(self, db, job_id: int, from_status: str, to_status: str, **values) -> bool:
        validate_job_transition(from_status, to_status)
        result = db.execute(
            update(RetryJob)
            .where(RetryJob.id == job_id, RetryJob.status == from_status)
            .values(status=to_status, updated_at=self.now(), **values)
        )
        return result.rowcount == 1

    def mark_processing(self, job_id: int, db=None) -> bool:
        """Claim a pending job; False when another worker already claimed it."""

        with self._session(db) as session:
            return self._transition(session, job_id, "pending", "processing")

    def mark_completed(self, job_id: int, db=None) -> bool:
        with self._session(db) as session:
            return self._transition(session, job_id, "processing", "completed")

    def reschedule(
        self, job_id: int, new_retry_count: int, next_retry_at: datetime, error: str, db=None
    ) -> bool:
        with self._session(db) as session:
            return self._transition(
                session,
                job_id,
                "processing",
                "pending",
                current_retry=new_retry_count,
                next_retry_at=next_retry_at,
                last_error=error,
            )

    def mark_dead_letter(self, job_id: int, error: str, new_retry_count: int | None = None, db=None) -> bool:
        values: dict[str, Any] = {"last_error": error}
        if new_retry_count is not None:
            values["current_retry"] = new_retry_count
        with self._session(db) as session:
            return self._transition(session, job_id, "processing", "dead_letter", **values)

    def list_jobs(self, status: str | None = None, page: int = 1, limit: int = 20) -> tuple[list[RetryJob], int]:
        """Page through jobs newest first, optionally filtered by status."""

        page = max(page, 1)
        with self._session() as db:
            query = select(RetryJob)
            count_query = select(func.count()).select_from(RetryJob)
            if status and status != "all":
                query = query.where(RetryJob.status == status)
                count_query = count_query.where(RetryJob.status == status)
            total = db.execute(count_query).scalar_one()
            jobs = list(
                db.execute(
                    query.order_by(RetryJob.created_at.desc(), RetryJob.id.desc())
                    .limit(limit)
                    .offset((page - 1) * limit)
                ).scalars()
            )
        return jobs, total

    def stats(self) -> dict[str, int]:
        with self._session() as db:
            rows = db.execute(select(RetryJob.status, func.count()).group_by(RetryJob.status)).all()
            dead_letter = db.execute(select(func.count()).select_from(DeadLetterItem)).scalar_one()
        result = {status: 0 for status in JOB_STATUSES}
        for status, count in rows:
            if status in result:
                result[status] = count
        # The archive is the source of truth for the dead-letter count.
        result["dead_letter"] = dead_letter
        return result

    def reclaim_stale_processing(self, older_than_seconds: int) -> int:
        """Return jobs stuck in `processing` (e.g. after a worker crash) to `pending`.

        Opt-in recovery; only enabled when a processing lease is configured.
        """

        stale_before = self.now() - timedelta(seconds=older_than_seconds)
        with self._session() as db:
            result = db.execute(
                update(RetryJob)
                .where(RetryJob.status == "processing", RetryJob.updated_at < stale_before)
                .values(status="pending", next_retry_at=self.now(), updated_at=self.now())
            )
        if result.rowcount:
            logger.warning("retry_jobs_reclaimed count=%s lease_seconds=%s", result.rowcount, older_than_seconds)
        return result.rowcount

    def update_backlog_metrics(self) -> None:
        """Update gauges for pending queue depth and oldest pending age."""

        with self._session() as db:
            pending_statuses = ("pending", "processing")
            pending_count = db.execute(
                select(func.count()).select_from(RetryJob).where(RetryJob.status.in_(pending_statuses))
            ).scalar_one()
            oldest_pending = db.execute(
                select(func.min(RetryJob.created_at)).where(RetryJob.status.in_(pending_statuses))
            ).scalar_one()
        age_seconds = 0.0
        if oldest_pending is not None:
            age_seconds = max(0.0, (self.now() - as_utc(oldest_pending)).total_seconds())
        retry_queue_pending_total.labels(service=self.service_name).set(float(pending_count))
        retry_queue_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)
