"""Live event fan-out."""

import asyncio
import json

import pytest

from payrelay.common.events import LiveEvent
from payrelay.services.live_events.broadcaster import LiveEventBroadcaster
from payrelay.services.live_events.routes import QueueSink, sse_frame


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_failing_sink_is_dropped_others_still_receive():
    """One raising sink is removed; the remaining sinks each get the event."""

    broadcaster = LiveEventBroadcaster()
    received = {"a": [], "c": []}

    def broken(text):
        raise ConnectionResetError("gone")

    broadcaster.subscribe("a", received["a"].append)
    broadcaster.subscribe("b", broken)
    broadcaster.subscribe("c", received["c"].append)

    delivered = broadcaster.publish(LiveEvent(type="transaction:created", payload={"id": 1}))

    assert delivered == 2
    assert broadcaster.count() == 2
    assert json.loads(received["a"][0])["payload"] == {"id": 1}
    assert received["a"] == received["c"]


def test_publish_without_subscribers_is_noop():
    assert LiveEventBroadcaster().publish(LiveEvent(type="log:created", payload={})) == 0


def test_sweep_removes_only_stale_subscribers():
    """Subscribers that stopped pinging are swept; active ones stay."""

    ticker = Ticker()
    broadcaster = LiveEventBroadcaster(stale_after_seconds=60, clock=ticker)
    broadcaster.subscribe("quiet", lambda text: None)
    broadcaster.subscribe("active", lambda text: None)

    ticker.now = 45
    assert broadcaster.ping("active") is True
    ticker.now = 61

    assert broadcaster.sweep_stale() == 1
    assert broadcaster.ping("quiet") is False
    assert broadcaster.count() == 1


def test_unsubscribe_and_close():
    broadcaster = LiveEventBroadcaster()
    broadcaster.subscribe("a", lambda text: None)
    broadcaster.subscribe("b", lambda text: None)

    assert broadcaster.unsubscribe("a") is True
    assert broadcaster.unsubscribe("a") is False
    broadcaster.close()
    assert broadcaster.count() == 0


def test_event_text_serializes_datetimes_and_decimals():
    """Payload values from ORM rows serialize to plain JSON."""

    from datetime import datetime
    from decimal import Decimal

    text = LiveEvent(
        type="transaction:updated",
        payload={"amount": Decimal("10.50"), "created_at": datetime(2024, 1, 1, 12, 0)},
    ).to_text()

    body = json.loads(text)
    assert body["payload"] == {"amount": 10.5, "created_at": "2024-01-01T12:00:00+00:00"}
    assert body["type"] == "transaction:updated"
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_queue_sink_hands_text_to_connection_queue():
    """The SSE sink enqueues on the loop and frees a slot once the stream takes it."""

    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
    sink = QueueSink(asyncio.get_running_loop(), queue)

    sink("first")
    with pytest.raises(RuntimeError):
        sink("overflow")
    await asyncio.sleep(0)
    assert await queue.get() == "first"
    sink.taken()

    sink("second")
    await asyncio.sleep(0)
    assert await queue.get() == "second"


@pytest.mark.asyncio
async def test_burst_past_queue_size_drops_subscriber():
    """Publishing more events than the queue holds in one loop tick removes the subscriber."""

    loop = asyncio.get_running_loop()
    loop_errors = []
    loop.set_exception_handler(lambda _loop, context: loop_errors.append(context))
    broadcaster = LiveEventBroadcaster()
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=2)
    broadcaster.subscribe("dash", QueueSink(loop, queue))

    delivered = [broadcaster.publish(LiveEvent(type="retry:failed", payload={"n": n})) for n in range(4)]
    await asyncio.sleep(0)
    loop.set_exception_handler(None)

    assert delivered == [1, 1, 0, 0]
    assert broadcaster.count() == 0
    assert queue.qsize() == 2
    assert loop_errors == []


def test_failed_delivery_keeps_resubscribed_client():
    """A client that re-subscribes under the same id mid-publish is not evicted."""

    broadcaster = LiveEventBroadcaster()
    received = []

    def flaky(text):
        broadcaster.subscribe("dash", received.append)
        raise ConnectionResetError("gone")

    broadcaster.subscribe("dash", flaky)

    assert broadcaster.publish(LiveEvent(type="transaction:created", payload={})) == 0
    assert broadcaster.count() == 1
    broadcaster.publish(LiveEvent(type="transaction:updated", payload={}))
    assert len(received) == 1


def test_sse_frame_format():
    assert sse_frame('{"type":"ping"}') == 'data: {"type":"ping"}\n\n'
