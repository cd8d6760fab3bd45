"""Retry processor cycles against a mocked upstream."""

import json

import httpx
import pytest

from payrelay.common.errors import StorageError
from payrelay.services.retry_queue.models import DeadLetterItem
from payrelay.services.retry_queue.service import RetryProcessor, exception_message, response_error_message


class Upstream:
    """Mock transport answering from a scripted list of status codes per path."""

    def __init__(self, script: dict[str, list[int]], body: dict | None = None) -> None:
        self.script = {path: list(codes) for path, codes in script.items()}
        self.body = body or {"ok": True}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        codes = self.script[request.url.path]
        code = codes.pop(0) if len(codes) > 1 else codes[0]
        if code == 0:
            raise httpx.ConnectError("connection refused", request=request)
        if code >= 400:
            return httpx.Response(code, json={"errorMessage": f"upstream says {code}"})
        return httpx.Response(code, json=self.body)

    def hits(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)


def make_processor(store, dead_letters, broadcaster, upstream, **kwargs):
    return RetryProcessor(
        store,
        dead_letters,
        broadcaster=broadcaster,
        transport=httpx.MockTransport(upstream),
        **kwargs,
    )


def enqueue(store, path="/pay", max_retries=3, job_type="stk_push", payload=None):
    return store.enqueue(
        job_type=job_type,
        endpoint=f"https://provider.test{path}",
        method="POST",
        headers={"Authorization": "Bearer t"},
        payload=payload if payload is not None else {"Amount": 10},
        max_retries=max_retries,
        correlation_id=f"{job_type}-1",
    )


async def drain(processor, clock, cycles):
    results = []
    for _ in range(cycles):
        clock.advance(minutes=10)
        results.append(await processor.process_once())
    return results


@pytest.mark.asyncio
async def test_recovers_after_two_failures(store, dead_letters, broadcaster, sink, clock):
    """Two failures then a success leaves the job completed at retry 2."""

    upstream = Upstream({"/pay": [503, 503, 200]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    job = enqueue(store)

    results = await drain(processor, clock, 4)

    saved = store.get(job.id)
    assert saved.status == "completed"
    assert saved.current_retry == 2
    assert upstream.hits("/pay") == 3
    assert [r.as_dict() for r in results][:3] == [
        {"processed": 1, "completed": 0, "rescheduled": 1, "dead_lettered": 0, "skipped": 0},
        {"processed": 1, "completed": 0, "rescheduled": 1, "dead_lettered": 0, "skipped": 0},
        {"processed": 1, "completed": 1, "rescheduled": 0, "dead_lettered": 0, "skipped": 0},
    ]
    assert results[3].processed == 0
    assert sink.types().count("retry:failed") == 2
    assert sink.types().count("retry:completed") == 1


@pytest.mark.asyncio
async def test_exhausted_job_moves_to_dead_letter(store, dead_letters, broadcaster, sink, clock):
    """Three failures with max_retries=3 archive the job with its final error."""

    upstream = Upstream({"/pay": [500]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    job = enqueue(store)

    results = await drain(processor, clock, 5)

    saved = store.get(job.id)
    assert saved.status == "dead_letter"
    assert saved.current_retry == 3
    assert upstream.hits("/pay") == 3
    assert results[2].dead_lettered == 1

    items = dead_letters.list_dead_letter()
    assert len(items) == 1
    item = items[0]
    assert isinstance(item, DeadLetterItem)
    assert item.original_job_id == job.id
    assert item.final_error == "upstream says 500"
    assert item.parsed_payload() == {"Amount": 10}
    assert item.correlation_id == "stk_push-1"

    failed = [e for e in sink.events if e["type"] == "retry:failed"]
    assert [e["payload"]["dead_letter"] for e in failed] == [False, False, True]
    assert "log:created" in sink.types()


@pytest.mark.asyncio
async def test_attempts_never_exceed_max_retries(store, dead_letters, broadcaster, clock):
    """An always-failing job is attempted exactly max_retries times."""

    upstream = Upstream({"/pay": [0]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    enqueue(store, max_retries=5)

    await drain(processor, clock, 10)

    assert upstream.hits("/pay") == 5
    assert dead_letters.count() == 1
    assert dead_letters.list_dead_letter()[0].final_error == "connection refused"


@pytest.mark.asyncio
async def test_single_job_outcome_does_not_affect_others(store, dead_letters, broadcaster, clock):
    """One failing job in a batch does not change the others' outcomes."""

    upstream = Upstream({"/ok": [200], "/bad": [502], "/last": [200]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    ok = enqueue(store, path="/ok")
    bad = enqueue(store, path="/bad", max_retries=1)
    last = enqueue(store, path="/last")

    [result] = await drain(processor, clock, 1)

    assert result.as_dict() == {"processed": 3, "completed": 2, "rescheduled": 0, "dead_lettered": 1, "skipped": 0}
    assert store.get(ok.id).status == "completed"
    assert store.get(bad.id).status == "dead_letter"
    assert store.get(last.id).status == "completed"


def fail_once(monkeypatch, store, method_name):
    """Make one store method raise StorageError on its first call only."""

    real = getattr(store, method_name)
    failures = [StorageError("database is locked")]

    def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return real(*args, **kwargs)

    monkeypatch.setattr(store, method_name, flaky)


@pytest.mark.asyncio
async def test_claim_storage_error_skips_job_for_one_cycle(store, dead_letters, broadcaster, clock, monkeypatch):
    """A failed claim leaves the job pending; the next cycle delivers it."""

    upstream = Upstream({"/pay": [200]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    job = enqueue(store)
    fail_once(monkeypatch, store, "mark_processing")

    [first] = await drain(processor, clock, 1)

    assert first.as_dict() == {"processed": 1, "completed": 0, "rescheduled": 0, "dead_lettered": 0, "skipped": 1}
    assert store.get(job.id).status == "pending"
    assert upstream.hits("/pay") == 0

    [second] = await drain(processor, clock, 1)

    assert second.completed == 1
    assert store.get(job.id).status == "completed"


@pytest.mark.asyncio
async def test_failure_write_error_skips_only_that_job(store, dead_letters, broadcaster, clock, monkeypatch):
    """A storage error while rescheduling one job leaves the rest of the batch untouched."""

    upstream = Upstream({"/bad": [503, 200], "/ok": [200]})
    processor = make_processor(store, dead_letters, broadcaster, upstream, lease_seconds=300)
    bad = enqueue(store, path="/bad")
    ok = enqueue(store, path="/ok")
    fail_once(monkeypatch, store, "reschedule")

    [first] = await drain(processor, clock, 1)

    assert first.as_dict() == {"processed": 2, "completed": 1, "rescheduled": 0, "dead_lettered": 0, "skipped": 1}
    assert store.get(ok.id).status == "completed"
    assert store.get(bad.id).status == "processing"

    # Past the lease the stuck job is reclaimed and delivered.
    [second] = await drain(processor, clock, 1)

    assert second.completed == 1
    assert store.get(bad.id).status == "completed"


@pytest.mark.asyncio
async def test_batch_size_bounds_a_cycle(store, dead_letters, broadcaster, clock):
    """A cycle handles at most batch_size jobs."""

    upstream = Upstream({"/pay": [200]})
    processor = make_processor(store, dead_letters, broadcaster, upstream, batch_size=2, concurrency=2)
    for _ in range(5):
        enqueue(store)

    first, second, third = await drain(processor, clock, 3)

    assert (first.completed, second.completed, third.completed) == (2, 2, 1)


@pytest.mark.asyncio
async def test_reschedule_uses_backoff_delay(store, dead_letters, broadcaster, clock):
    """After attempt n fails the job is due again delay(n) later."""

    upstream = Upstream({"/pay": [503]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    job = enqueue(store)

    await drain(processor, clock, 1)
    saved = store.get(job.id)
    assert saved.current_retry == 1
    assert saved.last_error == "upstream says 503"

    clock.advance(milliseconds=1999)
    assert (await processor.process_once()).processed == 0
    clock.advance(milliseconds=1)
    assert (await processor.process_once()).processed == 1


@pytest.mark.asyncio
async def test_replays_stored_request(store, dead_letters, broadcaster, clock):
    """The retried call carries the stored method, headers and JSON body."""

    upstream = Upstream({"/pay": [200]})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    enqueue(store, payload={"Amount": 25, "PhoneNumber": "254712345678"})

    await drain(processor, clock, 1)

    [request] = upstream.requests
    assert request.method == "POST"
    assert request.headers["authorization"] == "Bearer t"
    assert json.loads(request.content) == {"Amount": 25, "PhoneNumber": "254712345678"}


@pytest.mark.asyncio
async def test_completion_hook_receives_response_body(store, dead_letters, broadcaster, clock):
    """Registered hooks run with the job and decoded body after success."""

    upstream = Upstream({"/pay": [200]}, body={"CheckoutRequestID": "ws_CO_1"})
    processor = make_processor(store, dead_letters, broadcaster, upstream)
    seen = []

    async def hook(job, body):
        seen.append((job.job_type, body))

    processor.register_completion_hook("stk_push", hook)
    enqueue(store)

    await drain(processor, clock, 1)

    assert seen == [("stk_push", {"CheckoutRequestID": "ws_CO_1"})]


@pytest.mark.asyncio
async def test_failing_completion_hook_keeps_job_completed(store, dead_letters, broadcaster, clock):
    """Hook errors are logged; the delivery still counts as completed."""

    upstream = Upstream({"/pay": [200]})

    def hook(job, body):
        raise RuntimeError("boom")

    processor = make_processor(store, dead_letters, broadcaster, upstream, completion_hooks={"stk_push": hook})
    job = enqueue(store)

    [result] = await drain(processor, clock, 1)

    assert result.completed == 1
    assert store.get(job.id).status == "completed"


def test_response_error_message_prefers_body_fields():
    """message, errorMessage and error beat the bare status line."""

    assert response_error_message(httpx.Response(400, json={"message": "bad phone"})) == "bad phone"
    assert response_error_message(httpx.Response(500, json={"errorMessage": "down"})) == "down"
    assert response_error_message(httpx.Response(500, json={"error": "nope"})) == "nope"
    assert response_error_message(httpx.Response(503, text="<html>")) == "HTTP 503"


def test_exception_message_falls_back_to_class_name():
    assert exception_message(RuntimeError("x")) == "x"
    assert exception_message(TimeoutError()) == "TimeoutError"
