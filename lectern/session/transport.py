"""Downstream sinks and SSE encoding."""

from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Protocol

from lectern.logging import get_logger
from lectern.session.events import StreamEvent

logger = get_logger(__name__)

_CLOSED = object()


class DownstreamSink(Protocol):
    """Where a turn's events go.

    ``write`` returns False once the client is gone; that is the only
    liveness signal a session relies on.
    """

    async def write(self, event: StreamEvent) -> bool: ...

    async def close(self) -> None: ...


def encode_sse(event: StreamEvent) -> str:
    """Encode an event as one Server-Sent Events message.

    Structured payloads are sent as JSON; text payloads are sent as-is with
    one ``data:`` line per line of text.
    """
    data = event["data"]
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    lines = [f"event: {event['type']}"]
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


class QueueSink:
    """An in-process sink read as an async iterator.

    The reader calls :meth:`disconnect` when it stops listening; every write
    after that reports the sink as dead.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._disconnected = False

    @property
    def alive(self) -> bool:
        return not (self._closed or self._disconnected)

    async def write(self, event: StreamEvent) -> bool:
        if not self.alive:
            return False
        await self._queue.put(event)
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def disconnect(self) -> None:
        """Mark the reader as gone."""
        if not self._disconnected:
            self._disconnected = True
            logger.debug("sink_disconnected")

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]
