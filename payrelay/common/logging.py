"""JSON logs on stdout, tagged with the request, retry job and provider correlation in scope.

`trace_id` is set per HTTP request by the gateway middleware; `job_id` and
`correlation_id` are bound around each retry job with `job_context`, and by
callback handlers from the provider's request ids.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from payrelay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
job_id_ctx: ContextVar[str] = ContextVar("job_id", default="")
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(job_id)s %(correlation_id)s %(message)s"
# Client libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.job_id = job_id_ctx.get()
        record.correlation_id = correlation_id_ctx.get()
        return True


@contextmanager
def job_context(job_id: int | str, correlation_id: str | None = None) -> Iterator[None]:
    """Bind a retry job's ids to every log line emitted inside the block."""

    job_token = job_id_ctx.set(str(job_id))
    correlation_token = correlation_id_ctx.set(correlation_id or "")
    try:
        yield
    finally:
        correlation_id_ctx.reset(correlation_token)
        job_id_ctx.reset(job_token)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the root logger; safe to call more than once."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("payrelay")
