"""Shared fixtures: in-memory SQLite, a controllable clock, recording sinks.

Environment is set before any `payrelay` import because settings load at
import time.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["MPESA_SKIP_IP_VERIFICATION"] = "false"
os.environ["AUTO_CREATE_SCHEMA"] = "false"
os.environ["RETRY_PROCESSOR_ENABLED"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ.setdefault("MPESA_CONSUMER_KEY", "test-key")
os.environ.setdefault("MPESA_CONSUMER_SECRET", "test-secret")
os.environ.setdefault("MPESA_PASSKEY", "test-passkey")
os.environ.setdefault("MPESA_CALLBACK_BASE_URL", "https://payrelay.test")

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from payrelay.common.backoff import BackoffPolicy
from payrelay.common.db import build_engine, build_session_factory, create_schema
from payrelay.services.live_events.broadcaster import LiveEventBroadcaster
from payrelay.services.retry_queue.dead_letter import DeadLetterManager
from payrelay.services.retry_queue.store import JobStore
from payrelay.services.webhooks.verification import InMemoryRateLimiter


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingSink:
    """Broadcaster sink that keeps every delivered event."""

    def __init__(self) -> None:
        self.texts: list[str] = []

    def __call__(self, text: str) -> None:
        self.texts.append(text)

    @property
    def events(self) -> list[dict]:
        return [json.loads(t) for t in self.texts]

    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_schema(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backoff():
    """Jitter-free policy: delay(n) == 1000 * 2**n ms."""

    return BackoffPolicy(initial_delay_ms=1000, multiplier=2, max_delay_ms=300_000, jitter_factor=0.0)


@pytest.fixture
def broadcaster():
    return LiveEventBroadcaster()


@pytest.fixture
def sink(broadcaster):
    recording = RecordingSink()
    broadcaster.subscribe("test-sink", recording)
    return recording


@pytest.fixture
def store(session_factory, backoff, clock):
    return JobStore(session_factory, backoff=backoff, now=clock)


@pytest.fixture
def dead_letters(store, broadcaster):
    return DeadLetterManager(store, broadcaster=broadcaster)


class ProviderStub:
    """Mock provider: scripted (status, body) replies per URL path, last reply repeats."""

    def __init__(self) -> None:
        self.replies: dict[str, list[tuple[int, dict]]] = {
            "/oauth/v1/generate": [(200, {"access_token": "token-1", "expires_in": "3599"})],
        }
        self.requests: list[httpx.Request] = []

    def reply(self, path: str, *replies: tuple[int, dict]) -> None:
        self.replies[path] = list(replies)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.replies.get(request.url.path)
        if not replies:
            return httpx.Response(404, json={"errorMessage": "no route"})
        status, body = replies.pop(0) if len(replies) > 1 else replies[0]
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def app(session_factory, broadcaster, provider, backoff):
    from payrelay.services.gateway.main import create_app

    return create_app(
        session_factory=session_factory,
        broadcaster=broadcaster,
        transport=httpx.MockTransport(provider),
        rate_limiter=InMemoryRateLimiter(limit=1000, window_seconds=60),
        backoff=backoff,
        auto_create_schema=False,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def provider_headers():
    """Headers of a callback arriving from an allow-listed provider address."""

    return {"x-forwarded-for": "196.201.214.200", "user-agent": "Daraja"}
