"""Gateway application: provider operations, callbacks, queue admin and live feed.

`create_app` constructs every service explicitly and stores it on
`app.state`; background loops (broadcaster sweeper, rate-limit sweeper and the
optional in-process retry loop) live and die with the FastAPI lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from time import monotonic, perf_counter
from uuid import uuid4

import httpx
import redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from payrelay.common.backoff import BackoffPolicy
from payrelay.common.config import settings
from payrelay.common.db import SessionLocal, create_schema
from payrelay.common.errors import PayRelayError, TransientDeliveryError
from payrelay.common.logging import configure_logging, logger, trace_id_ctx
from payrelay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from payrelay.common.startup import log_startup_config
from payrelay.common.tracing import instrument_app, setup_tracing
from payrelay.services.live_events import routes as live_event_routes
from payrelay.services.live_events.broadcaster import LiveEventBroadcaster
from payrelay.services.mpesa import routes as mpesa_routes
from payrelay.services.mpesa.client import MpesaClient, OutboundDispatcher, provider_completion_hooks
from payrelay.services.retry_queue import routes as retry_queue_routes
from payrelay.services.retry_queue.dead_letter import DeadLetterManager
from payrelay.services.retry_queue.service import RetryProcessor
from payrelay.services.retry_queue.store import JobStore
from payrelay.services.transactions import routes as transaction_routes
from payrelay.services.transactions.service import TransactionService
from payrelay.services.webhooks import routes as webhook_routes
from payrelay.services.webhooks.service import CallbackService
from payrelay.services.webhooks.verification import (
    InMemoryRateLimiter,
    IpAllowList,
    RedisRateLimiter,
    WebhookVerifier,
)


VERSION = "1.0.0"

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    "gateway",
    [
        "service_name",
        "database_url",
        "redis_url",
        "mpesa_environment",
        "mpesa_consumer_key",
        "mpesa_callback_base_url",
        "mpesa_skip_ip_verification",
        "rate_limit_backend",
        "retry_processor_enabled",
    ],
)


def build_rate_limiter() -> InMemoryRateLimiter | RedisRateLimiter:
    if settings.rate_limit_backend == "redis":
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisRateLimiter(client, settings.webhook_rate_limit, settings.webhook_rate_window_seconds)
    return InMemoryRateLimiter(settings.webhook_rate_limit, settings.webhook_rate_window_seconds)


def error_envelope(status_code: int, message: str, code: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, "code": code, **extra})


def create_app(
    session_factory=None,
    broadcaster: LiveEventBroadcaster | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    rate_limiter: InMemoryRateLimiter | RedisRateLimiter | None = None,
    backoff: BackoffPolicy | None = None,
    auto_create_schema: bool | None = None,
) -> FastAPI:
    """Build the gateway with its services; arguments override settings-driven defaults."""

    session_factory = session_factory or SessionLocal
    service_name = settings.service_name
    broadcaster = broadcaster or LiveEventBroadcaster(
        stale_after_seconds=settings.broadcaster_stale_seconds, service_name=service_name
    )
    rate_limiter = rate_limiter or build_rate_limiter()
    if auto_create_schema is None:
        auto_create_schema = settings.auto_create_schema

    http_client = httpx.AsyncClient(timeout=settings.mpesa_request_timeout_seconds, transport=transport)
    store = JobStore(session_factory, backoff=backoff, service_name=service_name)
    dead_letters = DeadLetterManager(store, broadcaster=broadcaster)
    transactions = TransactionService(session_factory, broadcaster=broadcaster)
    processor = RetryProcessor(
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
    dispatcher = OutboundDispatcher(
        store,
        http_client,
        broadcaster=broadcaster,
        default_max_retries=settings.retry_default_max_retries,
        service_name=service_name,
    )
    verifier = WebhookVerifier(
        session_factory,
        IpAllowList(settings.webhook_ip_whitelist),
        rate_limiter,
        skip_ip_verification=settings.mpesa_skip_ip_verification,
        service_name=service_name,
    )
    callbacks = CallbackService(
        session_factory,
        broadcaster=broadcaster,
        min_amount=settings.c2b_min_amount,
        max_amount=settings.c2b_max_amount,
        service_name=service_name,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Create schema, start sweepers (and the retry loop when enabled), tear down on exit."""

        if auto_create_schema:
            create_schema(bind=session_factory.kw["bind"])
        tasks = [
            asyncio.create_task(broadcaster.run_sweeper(settings.broadcaster_sweep_seconds)),
            asyncio.create_task(rate_limiter.run_sweeper(settings.webhook_rate_sweep_seconds)),
        ]
        if settings.retry_processor_enabled:
            tasks.append(asyncio.create_task(processor.run_forever(settings.retry_poll_interval_ms)))
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        broadcaster.close()
        await http_client.aclose()

    app = FastAPI(title="PayRelay Gateway", version=VERSION, lifespan=lifespan)
    instrument_app(app)
    app.state.started_at = monotonic()
    app.state.session_factory = session_factory
    app.state.broadcaster = broadcaster
    app.state.job_store = store
    app.state.dead_letters = dead_letters
    app.state.retry_processor = processor
    app.state.transactions = transactions
    app.state.mpesa_client = MpesaClient(http_client, dispatcher, transactions)
    app.state.webhook_verifier = verifier
    app.state.callback_service = callbacks

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(TransientDeliveryError)
    async def transient_delivery_handler(_: Request, exc: TransientDeliveryError):
        return error_envelope(exc.status_code, exc.message, exc.code, retryJobId=exc.job_id)

    @app.exception_handler(PayRelayError)
    async def payrelay_error_handler(_: Request, exc: PayRelayError):
        if exc.status_code >= 500:
            logger.error("request_failed code=%s error=%s", exc.code, exc.message)
        return error_envelope(exc.status_code, exc.message, exc.code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        details = ", ".join(
            f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}" for err in exc.errors()
        )
        return error_envelope(400, f"Validation failed: {details}", "VALIDATION_ERROR")

    app.include_router(mpesa_routes.router)
    app.include_router(webhook_routes.router)
    app.include_router(retry_queue_routes.router)
    app.include_router(transaction_routes.router)
    app.include_router(live_event_routes.router)

    @app.get("/health")
    def health(request: Request):
        """Database probe plus live subscriber count."""

        now = datetime.now(timezone.utc).isoformat()
        try:
            with request.app.state.session_factory() as db:
                db.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error("health_check_failed error=%s", exc)
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "timestamp": now, "error": str(exc)},
            )
        return {
            "status": "healthy",
            "timestamp": now,
            "version": VERSION,
            "uptime": int(monotonic() - request.app.state.started_at),
            "connections": {"sse": request.app.state.broadcaster.count()},
            "environment": settings.mpesa_environment,
        }

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()
