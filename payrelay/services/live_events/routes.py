"""Server-sent events endpoint for the live dashboard feed."""

import asyncio
import threading
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from payrelay.common.config import settings
from payrelay.common.events import control_frame
from payrelay.common.logging import logger


router = APIRouter(tags=["events"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(text: str) -> str:
    return f"data: {text}\n\n"


class QueueSink:
    """Sink that hands event text to a connection queue from any thread.

    `pending` counts items scheduled onto the loop and not yet taken by the
    stream, so overflow is caught in the publishing thread. Raising there,
    or when the loop is gone, makes the broadcaster drop the subscriber.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        self.loop = loop
        self.queue = queue
        self.pending = 0
        self._lock = threading.Lock()

    def __call__(self, text: str) -> None:
        with self._lock:
            if self.queue.maxsize and self.pending >= self.queue.maxsize:
                raise RuntimeError("subscriber queue full")
            self.pending += 1
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, text)
        except RuntimeError:
            self.taken()
            raise

    def taken(self) -> None:
        with self._lock:
            self.pending -= 1


@router.get("/api/events")
async def live_events(request: Request):
    """Stream live events; heartbeats keep the subscription from being swept."""

    broadcaster = request.app.state.broadcaster
    client_id = f"client-{uuid4().hex}"
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=settings.sse_queue_size)
    heartbeat_seconds = settings.sse_heartbeat_seconds

    async def stream():
        sink = QueueSink(asyncio.get_running_loop(), queue)
        broadcaster.subscribe(client_id, sink)
        try:
            yield sse_frame(control_frame("connected", clientId=client_id))
            while True:
                try:
                    text = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    if not broadcaster.ping(client_id):
                        # Swept or dropped after a failed delivery; let the client reconnect.
                        break
                    yield sse_frame(control_frame("ping"))
                    continue
                sink.taken()
                yield sse_frame(text)
        finally:
            broadcaster.unsubscribe(client_id)
            logger.info("sse_stream_closed client_id=%s", client_id)

    logger.info("sse_stream_opened client_id=%s", client_id)
    return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)
