from __future__ import annotations
import asyncio, json, logging
from typing import Any, AsyncIterator, Callable, Optional

from sse_starlette import ServerSentEvent

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s -- %(message)s"


class EventHub:
    """Fans ``(event, data)`` pairs out to every connected consumer queue."""

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._qs: set[asyncio.Queue[tuple[str, Any]]] = set()

    def register(self) -> asyncio.Queue[tuple[str, Any]]:
        q: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=self.maxsize)
        self._qs.add(q)
        return q

    def unregister(self, q: asyncio.Queue) -> None:
        self._qs.discard(q)

    @property
    def listeners(self) -> int:
        return len(self._qs)

    def publish(self, event: str, data: Any) -> None:
        for q in list(self._qs):
            try:
                q.put_nowait((event, data))
            except asyncio.QueueFull:
                # drop oldest until we can insert (simple backpressure)
                try:
                    q.get_nowait()
                    q.put_nowait((event, data))
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass


def to_sse(event: str, data: Any) -> ServerSentEvent:
    payload = data if isinstance(data, str) else json.dumps(data, default=str)
    return ServerSentEvent(data=payload, event=event)


async def stream(
    hub: EventHub, greeting: Optional[Callable[[], tuple[str, Any]]] = None
) -> AsyncIterator[ServerSentEvent]:
    """Yield events published on ``hub`` until the client goes away.

    ``greeting`` is evaluated after subscribing, so nothing published in
    between is lost.
    """
    q = hub.register()
    try:
        if greeting is not None:
            yield to_sse(*greeting())
        while True:
            event, data = await q.get()
            yield to_sse(event, data)
    finally:
        hub.unregister(q)


class LogRelay(logging.Handler):
    """Logging handler that publishes formatted records as ``log`` events."""

    def __init__(self, hub: EventHub):
        super().__init__()
        self.hub = hub
        self.setFormatter(logging.Formatter(LOG_FORMAT, "%Y-%m-%d %H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.hub.publish("log", self.format(record))
        except Exception:
            self.handleError(record)


def attach_log_relay(hub: EventHub, level: int = logging.INFO) -> LogRelay:
    """
    Attach a relay to the root logger and to the uvicorn loggers, which
    default to propagate=False.
    """
    relay = LogRelay(hub)
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(relay)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        lg.addHandler(relay)
    return relay
