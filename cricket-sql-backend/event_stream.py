"""
Event Sinks + Server-Sent Events framing

The request handler never writes to the transport directly. It talks to an
EventSink:

    emit(event, data)  - queue one `status` / `result` / `error` event
    close()            - end the stream

Writes after close() (including after the client went away) are no-ops.

Implementations:
    QueueEventSink    - backs a FastAPI StreamingResponse
    InMemoryEventSink - records events for tests
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

STATUS_EVENT = "status"
RESULT_EVENT = "result"
ERROR_EVENT = "error"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def format_sse(event: str, data: Any) -> str:
    """One SSE frame: `event: <name>\\ndata: <json>\\n\\n`."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class EventSink(ABC):
    """Destination for pipeline events."""

    def __init__(self):
        self.closed = False

    @abstractmethod
    async def emit(self, event: str, data: Any) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class QueueEventSink(EventSink):
    """
    Feeds a StreamingResponse through an asyncio.Queue.

    The pipeline task produces into the queue; stream() is the response body.
    If the client disconnects, stream() stops being iterated and the sink is
    marked closed, so the still-running pipeline can keep emitting harmlessly.
    """

    _END = None

    def __init__(self):
        super().__init__()
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def emit(self, event: str, data: Any) -> None:
        if self.closed:
            logger.debug(f"Dropped '{event}' event: stream already closed")
            return
        self._queue.put_nowait(format_sse(event, data))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(self._END)

    async def stream(self) -> AsyncIterator[str]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is self._END:
                    break
                yield frame
        finally:
            self.closed = True


class InMemoryEventSink(EventSink):
    """Records (event, data) pairs in order."""

    def __init__(self):
        super().__init__()
        self.events: List[Tuple[str, Any]] = []
        self.close_count = 0

    async def emit(self, event: str, data: Any) -> None:
        if self.closed:
            return
        self.events.append((event, data))

    async def close(self) -> None:
        self.close_count += 1
        self.closed = True

    def names(self) -> List[str]:
        return [event for event, _ in self.events]

    def terminal_events(self) -> List[Tuple[str, Any]]:
        return [(e, d) for e, d in self.events if e in (RESULT_EVENT, ERROR_EVENT)]
