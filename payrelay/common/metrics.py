"""Prometheus metric definitions shared across the gateway and worker."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
provider_requests_total = Counter(
    "provider_requests_total",
    "Outbound provider calls by operation and outcome",
    ["service", "operation", "outcome"],
)
retry_jobs_enqueued_total = Counter("retry_jobs_enqueued_total", "Jobs added to the retry queue", ["service", "job_type"])
retry_attempts_total = Counter(
    "retry_attempts_total",
    "Retry job execution attempts by outcome",
    ["service", "job_type", "outcome"],
)
dead_letter_total = Counter("dead_letter_total", "Jobs moved to the dead-letter queue", ["service", "job_type"])
dead_letter_requeued_total = Counter("dead_letter_requeued_total", "Dead-letter items requeued", ["service"])
retry_queue_pending_total = Gauge(
    "retry_queue_pending_total",
    "Current count of retry jobs pending or processing",
    ["service"],
)
retry_queue_oldest_pending_age_seconds = Gauge(
    "retry_queue_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending retry job",
    ["service"],
)
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Inbound provider callbacks by type and verification outcome",
    ["service", "callback_type", "outcome"],
)
duplicate_callbacks_skipped_total = Counter(
    "duplicate_callbacks_skipped_total",
    "Callbacks that did not produce a new state change",
    ["service", "callback_type"],
)
live_subscribers = Gauge("live_subscribers", "Connected live event subscribers", ["service"])
live_events_published_total = Counter(
    "live_events_published_total",
    "Live events published by type",
    ["service", "event_type"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
