"""In-process fan-out of live events to dashboard subscribers.

The subscriber map is guarded by a lock. `publish` snapshots the map under
the lock and delivers outside it, so a slow or failing sink never blocks
subscribe/unsubscribe and never prevents delivery to the remaining sinks.
"""

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from payrelay.common.events import LiveEvent
from payrelay.common.logging import logger
from payrelay.common.metrics import live_events_published_total, live_subscribers


Sink = Callable[[str], None]


@dataclass
class Subscriber:
    id: str
    sink: Sink
    last_ping: float


class LiveEventBroadcaster:
    """Observer registry owned by the application instance."""

    def __init__(
        self,
        stale_after_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        service_name: str = "payrelay",
    ) -> None:
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock
        self.service_name = service_name
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def _update_gauge(self) -> None:
        live_subscribers.labels(service=self.service_name).set(len(self._subscribers))

    def subscribe(self, subscriber_id: str, sink: Sink) -> None:
        with self._lock:
            self._subscribers[subscriber_id] = Subscriber(subscriber_id, sink, self.clock())
            total = len(self._subscribers)
            self._update_gauge()
        logger.info("live_subscriber_connected subscriber_id=%s total=%s", subscriber_id, total)

    def unsubscribe(self, subscriber_id: str) -> bool:
        with self._lock:
            removed = self._subscribers.pop(subscriber_id, None) is not None
            total = len(self._subscribers)
            self._update_gauge()
        if removed:
            logger.info("live_subscriber_disconnected subscriber_id=%s total=%s", subscriber_id, total)
        return removed

    def ping(self, subscriber_id: str) -> bool:
        """Refresh a subscriber's liveness; False when it is no longer registered."""

        with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is None:
                return False
            subscriber.last_ping = self.clock()
            return True

    def publish(self, event: LiveEvent) -> int:
        """Deliver `event` to every subscriber; returns the number of successful deliveries."""

        text = event.to_text()
        with self._lock:
            snapshot = list(self._subscribers.values())

        delivered = 0
        failed: list[Subscriber] = []
        for subscriber in snapshot:
            try:
                subscriber.sink(text)
                delivered += 1
            except Exception as exc:
                logger.warning("live_delivery_failed subscriber_id=%s error=%s", subscriber.id, exc)
                failed.append(subscriber)

        if failed:
            with self._lock:
                for subscriber in failed:
                    # A client may have re-subscribed under the same id since the snapshot.
                    if self._subscribers.get(subscriber.id) is subscriber:
                        del self._subscribers[subscriber.id]
                self._update_gauge()
        live_events_published_total.labels(service=self.service_name, event_type=event.type).inc()
        logger.debug("live_event_published type=%s delivered=%s", event.type, delivered)
        return delivered

    def sweep_stale(self) -> int:
        """Drop subscribers that have not pinged within `stale_after_seconds`."""

        cutoff = self.clock() - self.stale_after_seconds
        with self._lock:
            stale = [sid for sid, sub in self._subscribers.items() if sub.last_ping < cutoff]
            for subscriber_id in stale:
                del self._subscribers[subscriber_id]
            self._update_gauge()
        for subscriber_id in stale:
            logger.info("live_subscriber_stale_removed subscriber_id=%s", subscriber_id)
        return len(stale)

    def count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._update_gauge()

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically sweep stale subscribers until cancelled."""

        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep_stale()
