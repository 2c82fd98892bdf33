"""Cancellable upstream model streams addressed by request id."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from lectern.logging import get_logger
from lectern.providers.base import LLMProvider, LLMResponse, StreamOptions

logger = get_logger(__name__)

_END = object()


@dataclass
class UpstreamRequest:
    request_id: str
    model: str
    task: asyncio.Task[None] | None = None
    queue: asyncio.Queue[Any] = field(default_factory=asyncio.Queue)
    cancelled: bool = False


class UpstreamStreams:
    """Runs provider streams as background tasks feeding per-request queues.

    ``open`` returns a request id immediately; ``events`` yields the stream's
    events in order; ``cancel`` stops the upstream call and is safe to call
    more than once.
    """

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider
        self._requests: dict[str, UpstreamRequest] = {}

    @property
    def active_count(self) -> int:
        return len(self._requests)

    def open(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        options: StreamOptions | None = None,
    ) -> str:
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        request = UpstreamRequest(request_id=request_id, model=model or self.provider.get_default_model())
        self._requests[request_id] = request
        request.task = asyncio.create_task(self._pump(request, messages, options or StreamOptions()))
        logger.debug("upstream_opened", request_id=request_id, model=request.model, messages=len(messages))
        return request_id

    async def _pump(
        self,
        request: UpstreamRequest,
        messages: list[dict[str, Any]],
        options: StreamOptions,
    ) -> None:
        try:
            async for event in self.provider.stream_chat(messages, model=request.model, options=options):
                await request.queue.put(event)
                if event.get("type") == "done":
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("upstream_stream_crashed", request_id=request.request_id, error_type=type(e).__name__)
            await request.queue.put({
                "type": "done",
                "response": LLMResponse(content=f"Error calling LLM: {e}", finish_reason="error"),
            })
        finally:
            request.queue.put_nowait(_END)

    async def events(self, request_id: str) -> AsyncIterator[dict[str, Any]]:
        """Yield events for *request_id* until its ``done`` event or cancellation.

        A consumer that stops early (cancelled task, closed iterator) also
        stops the upstream call.
        """
        request = self._requests.get(request_id)
        if request is None:
            return
        try:
            while True:
                event = await request.queue.get()
                if event is _END:
                    break
                yield event
                if event.get("type") == "done":
                    break
        finally:
            if self._requests.pop(request_id, None) is not None and request.task and not request.task.done():
                request.task.cancel()
                logger.debug("upstream_abandoned", request_id=request_id, model=request.model)

    def cancel(self, request_id: str) -> bool:
        """Cancel an in-flight request. Returns True only for the call that cancelled it."""
        request = self._requests.pop(request_id, None)
        if request is None or request.cancelled:
            return False
        request.cancelled = True
        if request.task is not None and not request.task.done():
            request.task.cancel()
        request.queue.put_nowait(_END)
        logger.info("upstream_cancelled", request_id=request_id, model=request.model)
        return True

    async def collect(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        options: StreamOptions | None = None,
    ) -> LLMResponse:
        """Run a stream to completion and return its final response."""
        request_id = self.open(messages, model=model, options=options)
        response = LLMResponse(content=None, finish_reason="error")
        async for event in self.events(request_id):
            if event.get("type") == "done":
                response = event["response"]
        return response
