"""Process the retry queue from the command line.

    payrelay-process-queue                    # one cycle, then exit
    payrelay-process-queue --watch            # every 30s until interrupted
    payrelay-process-queue --watch --interval=5000

A single run exits 0 on success and 1 when the cycle raised. In watch mode
cycle errors are logged and the loop continues.
"""

import argparse
import asyncio

import httpx

from payrelay.common.backoff import BackoffPolicy
from payrelay.common.config import settings
from payrelay.common.db import SessionLocal, create_schema
from payrelay.common.logging import configure_logging, logger
from payrelay.common.startup import log_startup_config
from payrelay.common.tracing import setup_tracing
from payrelay.services.mpesa.client import provider_completion_hooks
from payrelay.services.retry_queue.dead_letter import DeadLetterManager
from payrelay.services.retry_queue.service import RetryProcessor
from payrelay.services.retry_queue.store import JobStore
from payrelay.services.transactions.service import TransactionService


def build_processor(
    session_factory=SessionLocal,
    broadcaster=None,
    transport: httpx.AsyncBaseTransport | None = None,
    backoff: BackoffPolicy | None = None,
) -> RetryProcessor:
    """Wire store, dead-letter manager and provider completion hooks from settings."""

    store = JobStore(session_factory, backoff=backoff, service_name=settings.service_name)
    dead_letters = DeadLetterManager(store, broadcaster=broadcaster)
    transactions = TransactionService(session_factory, broadcaster=broadcaster)
    return RetryProcessor(
        store,
        dead_letters,
        broadcaster=broadcaster,
        batch_size=settings.retry_batch_size,
        concurrency=settings.retry_concurrency,
        timeout_seconds=settings.retry_http_timeout_seconds,
        transport=transport,
        completion_hooks=provider_completion_hooks(transactions),
        lease_seconds=settings.retry_processing_lease_seconds,
    )


async def run(processor: RetryProcessor, watch: bool, interval_ms: int) -> None:
    if watch:
        logger.info("queue_worker_watch interval_ms=%s", interval_ms)
        await processor.run_forever(interval_ms)
        return
    result = await processor.process_once()
    logger.info("queue_worker_done %s", result.as_dict())


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process due retry-queue jobs.")
    parser.add_argument("--watch", action="store_true", help="keep processing on an interval")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.retry_poll_interval_ms,
        help="milliseconds between cycles in watch mode",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, processor: RetryProcessor | None = None) -> int:
    """CLI entrypoint; returns the process exit code."""

    args = parse_args(argv)
    configure_logging()
    setup_tracing(f"{settings.service_name}-worker")
    log_startup_config(
        "queue-worker",
        ["service_name", "database_url", "retry_batch_size", "retry_concurrency", "retry_processing_lease_seconds"],
    )
    try:
        if processor is None:
            if settings.auto_create_schema:
                create_schema()
            processor = build_processor()
        asyncio.run(run(processor, args.watch, args.interval))
    except KeyboardInterrupt:
        logger.info("queue_worker_interrupted")
        return 0
    except Exception as exc:
        logger.exception("queue_worker_failed error=%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
