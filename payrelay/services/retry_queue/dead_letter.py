"""Dead-letter archive for jobs that exhausted their retries."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from payrelay.common.error_events import record_error_event
from payrelay.common.errors import NotFoundError, StorageError
from payrelay.common.events import LiveEvent
from payrelay.common.logging import logger
from payrelay.common.metrics import dead_letter_requeued_total, dead_letter_total
from payrelay.services.retry_queue.models import DeadLetterItem, RetryJob
from payrelay.services.retry_queue.store import JobStore


class DeadLetterManager:
    """Owns creation and deletion of `dead_letter_queue` rows."""

    def __init__(self, store: JobStore, broadcaster=None) -> None:
        self.store = store
        self.session_factory = store.session_factory
        self.broadcaster = broadcaster
        self.service_name = store.service_name

    def move_to_dead_letter(self, job: RetryJob, final_error: str, new_retry_count: int | None = None) -> DeadLetterItem:
        """Archive `job` and flip it to `dead_letter` in one database transaction.

        Either both writes land or neither does, so a job is never left
        `processing` next to an existing archive row.
        """

        now: datetime = self.store.now()
        try:
            with self.session_factory() as db:
                item = DeadLetterItem(
                    original_job_id=job.id,
                    job_type=job.job_type,
                    endpoint=job.endpoint,
                    method=job.method,
                    headers=job.headers,
                    payload=job.payload,
                    max_retries=job.max_retries,
                    final_error=final_error,
                    correlation_id=job.correlation_id,
                    original_created_at=job.created_at,
                    created_at=now,
                )
                db.add(item)
                if not self.store.mark_dead_letter(job.id, final_error, new_retry_count=new_retry_count, db=db):
                    db.rollback()
                    raise StorageError(f"job {job.id} is no longer processing; dead-letter write abandoned")
                db.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"dead-letter write failed for job {job.id}: {exc}") from exc

        dead_letter_total.labels(service=self.service_name, job_type=job.job_type).inc()
        logger.error(
            "retry_job_dead_lettered job_id=%s dead_letter_id=%s job_type=%s final_error=%s",
            job.id,
            item.id,
            job.job_type,
            final_error,
        )
        record_error_event(
            self.session_factory,
            "DEAD_LETTER_QUEUE",
            f"Job moved to dead letter queue: {job.job_type}",
            stack_trace=final_error,
            request_data={"job_id": job.id, "correlation_id": job.correlation_id},
            broadcaster=self.broadcaster,
        )
        return item

    def list_dead_letter(self, limit: int = 50, offset: int = 0) -> list[DeadLetterItem]:
        """Archived items, newest first."""

        try:
            with self.session_factory() as db:
                return list(
                    db.execute(
                        select(DeadLetterItem)
                        .order_by(DeadLetterItem.created_at.desc(), DeadLetterItem.id.desc())
                        .limit(limit)
                        .offset(offset)
                    ).scalars()
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"dead-letter read failed: {exc}") from exc

    def count(self) -> int:
        try:
            with self.session_factory() as db:
                return db.execute(select(func.count()).select_from(DeadLetterItem)).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageError(f"dead-letter read failed: {exc}") from exc

    def requeue(self, dead_letter_id: int) -> int:
        """Put an archived job back on the queue with its retry counter reset.

        The enqueue and the archive delete are separate writes; a crash in
        between leaves the item in both places, which is tolerable for a
        manually triggered operation.
        """

        try:
            with self.session_factory() as db:
                item = db.get(DeadLetterItem, dead_letter_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"dead-letter read failed: {exc}") from exc
        if item is None:
            raise NotFoundError("Dead letter item not found")

        job = self.store.enqueue(
            job_type=item.job_type,
            endpoint=item.endpoint,
            method=item.method,
            headers=item.parsed_headers(),
            payload=item.parsed_payload(),
            max_retries=item.max_retries,
            correlation_id=item.correlation_id,
        )
        try:
            with self.session_factory() as db:
                row = db.get(DeadLetterItem, dead_letter_id)
                if row is not None:
                    db.delete(row)
                db.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"dead-letter delete failed for item {dead_letter_id}: {exc}") from exc

        dead_letter_requeued_total.labels(service=self.service_name).inc()
        logger.info("dead_letter_requeued dead_letter_id=%s new_job_id=%s", dead_letter_id, job.id)
        if self.broadcaster is not None:
            self.broadcaster.publish(LiveEvent(type="retry:queued", payload=job.to_dict()))
        return job.id
