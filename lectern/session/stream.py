"""One streaming turn, driven as an explicit state machine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from lectern.config.schema import PromptTemplates
from lectern.documents import DocumentRef
from lectern.errors import ModelMismatchError, ProviderError, TransportDeadError
from lectern.logging import get_logger
from lectern.memory.conversation import ConversationMemory, MemoryContext
from lectern.providers.base import LLMResponse, StreamOptions
from lectern.providers.streams import UpstreamStreams
from lectern.session.assembler import ContextAssembler
from lectern.session.events import (
    SourceItem,
    StreamEvent,
    content_event,
    done_event,
    error_event,
    sources_event,
    summary_used_event,
    thinking_event,
    usage_event,
)
from lectern.session.options import TurnOptions
from lectern.session.transport import DownstreamSink
from lectern.usage import UsageAccountant, UsageRecord

logger = get_logger(__name__)

_HISTORY_ROLES = frozenset({"user", "assistant"})


class SessionState(str, Enum):
    ASSEMBLING = "assembling"
    STREAMING = "streaming"
    COMPLETING = "completing"
    CANCELLING = "cancelling"
    FAILING = "failing"
    CLOSED = "closed"


@dataclass
class Turn:
    """One user message and the reply generated for it."""

    conversation_id: str
    user_text: str
    turn_id: str = field(default_factory=lambda: f"turn_{uuid.uuid4().hex[:12]}")
    assistant_text: str = ""
    thought_text: str = ""
    sources: list[SourceItem] = field(default_factory=list)
    usage: UsageRecord | None = None
    request_id: str | None = None
    mode: str | None = None
    outcome: str | None = None  # done | error | cancelled
    error: str | None = None


class StreamSession:
    """
    Drive one turn end to end.

    ASSEMBLING builds the prompt and emits ``sources`` (and ``summary_used``)
    before any model call. STREAMING relays upstream tokens; a failed
    downstream write moves to CANCELLING, which cancels the upstream request
    once and emits nothing more. COMPLETING writes the user and assistant
    messages to memory, emits ``usage`` and ``done`` and schedules
    compaction. FAILING emits ``error`` and leaves memory untouched.
    """

    def __init__(
        self,
        turn: Turn,
        *,
        document: DocumentRef | None,
        options: TurnOptions,
        sink: DownstreamSink,
        assembler: ContextAssembler,
        memory: ConversationMemory | None,
        streams: UpstreamStreams,
        accountant: UsageAccountant,
        prompts: PromptTemplates | None = None,
        default_model: str = "gemini/gemini-2.5-flash",
        include_thoughts: bool = True,
    ) -> None:
        self.turn = turn
        self.document = document
        self.options = options
        self.sink = sink
        self.assembler = assembler
        self.memory = memory
        self.streams = streams
        self.accountant = accountant
        self.prompts = prompts or PromptTemplates()
        self.model = options.model or default_model
        self.include_thoughts = include_thoughts
        self.state = SessionState.ASSEMBLING
        self._upstream_cancelled = False
        self._cached_content: str | None = None

    @property
    def uses_server_memory(self) -> bool:
        return self.memory is not None and bool(self.turn.conversation_id) and not self.options.client_memory

    async def run(self) -> Turn:
        structlog.contextvars.bind_contextvars(
            conversation_id=self.turn.conversation_id,
            turn_id=self.turn.turn_id,
        )
        try:
            messages = await self._assemble()
            if messages is not None:
                await self._stream(messages)
        except TransportDeadError:
            await self._on_transport_dead()
        except Exception as e:
            logger.exception("turn_crashed", state=self.state.value)
            await self._crash(e)
        finally:
            if self.state in (SessionState.STREAMING, SessionState.CANCELLING):
                self._cancel_upstream()
            structlog.contextvars.unbind_contextvars("conversation_id", "turn_id", "request_id")
        return self.turn

    async def _send(self, event: StreamEvent) -> None:
        if self.state is SessionState.CLOSED:
            raise TransportDeadError("session closed")
        if not await self.sink.write(event):
            raise TransportDeadError(f"downstream write failed for {event['type']}")

    async def _close(self) -> None:
        self.state = SessionState.CLOSED
        await self.sink.close()

    # -- ASSEMBLING ---------------------------------------------------------

    async def _assemble(self) -> list[dict[str, Any]] | None:
        self.state = SessionState.ASSEMBLING
        try:
            context = await self.assembler.assemble(self.document, self.turn.user_text, self.options)
            memory = await self._read_memory()
        except ModelMismatchError as e:
            logger.warning("turn_model_mismatch", requested=e.requested_model, cached=e.cached_model)
            await self._fail(str(e))
            return None
        except ProviderError as e:
            logger.error("turn_assembly_failed", provider=e.provider, error=e.message)
            await self._fail(e.message)
            return None

        self.turn.mode = context.mode
        self.turn.sources = list(context.sources)
        self._cached_content = context.cached_content

        system_prompt = context.system_prompt
        summary_payload: dict[str, Any] | None = None
        if self.options.client_memory:
            history = [
                {"role": m["role"], "content": m["content"]}
                for m in self.options.history or []
                if m.get("role") in _HISTORY_ROLES and m.get("content") is not None
            ]
            if self.options.summary:
                system_prompt = self._with_summary(system_prompt, self.options.summary)
                summary_payload = {"source": "client", "has_summary": True}
        else:
            history = memory.recent_messages
            if memory.summary and memory.summary.text:
                system_prompt = self._with_summary(system_prompt, memory.summary.text)
                summary_payload = {
                    "rounds_summarized": memory.summary.rounds_summarized,
                    "recent_messages": len(history) // 2,
                }

        await self._send(sources_event(self.turn.sources))
        if summary_payload is not None:
            await self._send(summary_used_event(summary_payload))

        logger.info(
            "turn_assembled",
            mode=context.mode,
            history=len(history),
            summary=summary_payload is not None,
            model=self.model,
        )
        return [
            {"role": "system", "content": system_prompt},
            *history,
            {"role": "user", "content": self.turn.user_text},
        ]

    async def _read_memory(self) -> MemoryContext:
        if not self.uses_server_memory:
            return MemoryContext()
        assert self.memory is not None
        return await self.memory.get_context(self.turn.conversation_id)

    def _with_summary(self, system_prompt: str, summary: str) -> str:
        return f"{system_prompt}\n\n{self.prompts.summary_label}\n{summary}"

    # -- STREAMING ----------------------------------------------------------

    def _stream_options(self) -> StreamOptions:
        return StreamOptions(
            enable_search=self.options.enable_search,
            enable_tools=self.options.enable_tools,
            tools=self.options.tools,
            cached_content=self._cached_content,
            include_thoughts=self.include_thoughts,
        )

    async def _stream(self, messages: list[dict[str, Any]]) -> None:
        self.state = SessionState.STREAMING
        request_id = self.streams.open(messages, model=self.model, options=self._stream_options())
        self.turn.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response: LLMResponse | None = None
        async for event in self.streams.events(request_id):
            kind = event.get("type")
            if kind == "text_delta":
                self.turn.assistant_text += event["delta"]
                await self._send(content_event(event["delta"]))
            elif kind == "thinking_delta":
                self.turn.thought_text += event["delta"]
                await self._send(thinking_event(event["delta"]))
            elif kind == "done":
                response = event["response"]

        if response is None:
            await self._fail("Upstream stream ended without a result")
        elif response.is_error:
            await self._fail(response.content or "Upstream model error")
        else:
            await self._complete(response)

    # -- terminal transitions -----------------------------------------------

    async def _complete(self, response: LLMResponse) -> None:
        self.state = SessionState.COMPLETING
        answer = response.content or self.turn.assistant_text
        self.turn.assistant_text = answer

        wrote_memory = False
        if self.uses_server_memory:
            assert self.memory is not None
            try:
                await self.memory.append(self.turn.conversation_id, {"role": "user", "content": self.turn.user_text})
                await self.memory.append(self.turn.conversation_id, {"role": "assistant", "content": answer})
                wrote_memory = True
            except ProviderError as e:
                logger.error("turn_memory_write_failed", provider=e.provider, error=e.message)
        self.turn.outcome = "done"

        try:
            if response.usage:
                self.turn.usage = self.accountant.calculate(response.usage, response.model or self.model)
                await self._send(usage_event(self.turn.usage.to_event_payload()))
            await self._send(done_event())
            await self._close()
            logger.info(
                "turn_completed",
                chars=len(answer),
                thought_chars=len(self.turn.thought_text),
                cost=self.turn.usage.cost if self.turn.usage else None,
            )
        finally:
            if wrote_memory:
                assert self.memory is not None
                await self.memory.maybe_compact(self.turn.conversation_id)

    async def _fail(self, message: str) -> None:
        self.state = SessionState.FAILING
        self.turn.outcome = "error"
        self.turn.error = message
        logger.warning("turn_failed", error=message)
        await self._send(error_event(message))
        await self._close()

    async def _crash(self, exc: Exception) -> None:
        """End a turn that raised unexpectedly with a single ``error`` event."""
        if self.state is SessionState.STREAMING:
            self._cancel_upstream()
        if self.state is SessionState.CLOSED:
            return
        try:
            await self._fail(f"Internal error: {exc}")
        except TransportDeadError:
            await self._on_transport_dead()

    def _cancel_upstream(self) -> None:
        if self._upstream_cancelled or self.turn.request_id is None:
            return
        self._upstream_cancelled = True
        self.streams.cancel(self.turn.request_id)

    async def _on_transport_dead(self) -> None:
        previous = self.state
        if self.turn.outcome is None:
            self.turn.outcome = "cancelled"
        if previous is SessionState.STREAMING:
            self.state = SessionState.CANCELLING
            self._cancel_upstream()
        logger.info("turn_client_gone", state=previous.value)
        self.state = SessionState.CLOSED
        await self.sink.close()
