"""Entry point for streaming turns and the operations around them."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from lectern.cache.base import ContextCacheProvider
from lectern.cache.gemini import GeminiContextCacheProvider
from lectern.cache.registry import CacheEntry, ContentCacheRegistry
from lectern.config.schema import Config
from lectern.documents import DocumentRef
from lectern.errors import ValidationError
from lectern.logging import get_logger
from lectern.memory.conversation import ConversationMemory, MemoryContext
from lectern.memory.store import ConversationStore, InMemoryConversationStore, RedisConversationStore
from lectern.providers.base import LLMProvider
from lectern.providers.embeddings import EmbeddingProvider, LiteLLMEmbeddingProvider
from lectern.providers.litellm_provider import LiteLLMProvider
from lectern.providers.streams import UpstreamStreams
from lectern.session.assembler import ContextAssembler
from lectern.session.events import StreamEvent
from lectern.session.options import ENGINES, TurnOptions
from lectern.session.registry import ConnectionState
from lectern.session.stream import StreamSession, Turn
from lectern.session.transport import DownstreamSink, QueueSink
from lectern.usage import UsageAccountant

logger = get_logger(__name__)


class Orchestrator:
    """
    Run streaming turns about documents (or free chat).

    ``start_turn`` validates synchronously and returns an async iterator of
    events; ``run_turn`` streams into a sink the caller owns.
    """

    def __init__(
        self,
        provider: LLMProvider,
        store: ConversationStore,
        *,
        config: Config | None = None,
        cache_provider: ContextCacheProvider | None = None,
        embeddings: EmbeddingProvider | None = None,
        accountant: UsageAccountant | None = None,
    ) -> None:
        self.config = config or Config()
        self.provider = provider
        self.store = store
        self.streams = UpstreamStreams(provider)
        self.accountant = accountant or UsageAccountant()
        self.default_model = provider.get_default_model()
        self.memory = ConversationMemory(
            store,
            self.streams,
            config=self.config.memory,
            prompts=self.config.prompts,
            model=self.default_model,
        )
        self.cache_registry: ContentCacheRegistry | None = None
        if cache_provider is not None:
            self.cache_registry = ContentCacheRegistry(
                cache_provider,
                min_tokens=self.config.cache.min_tokens,
                default_min_tokens=self.config.cache.default_min_tokens,
                default_ttl=self.config.cache.default_ttl_seconds,
            )
        self.assembler = ContextAssembler(
            self.cache_registry,
            embeddings,
            prompts=self.config.prompts,
            retrieval=self.config.retrieval,
            default_model=self.default_model,
        )
        self._detached: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_config(cls, config: Config) -> Orchestrator:
        """Build the LiteLLM provider, conversation store and cache provider from *config*."""
        api_key = config.provider.resolved_api_key or None
        provider = LiteLLMProvider(
            api_key=api_key,
            api_base=config.provider.api_base,
            default_model=config.model.default_model,
            extra_headers=config.provider.extra_headers,
            max_tokens=config.model.max_tokens,
            temperature=config.model.temperature,
            timeout=config.model.timeout,
            max_retries=config.model.max_retries,
            circuit_breaker_threshold=config.model.circuit_breaker_threshold,
            circuit_breaker_cooldown=config.model.circuit_breaker_cooldown,
        )

        store: ConversationStore
        if config.store.backend == "redis":
            store = RedisConversationStore.from_url(
                config.store.redis_url,
                key_prefix=config.store.key_prefix,
                max_messages=config.memory.max_history_messages,
                ttl_seconds=config.memory.history_ttl_seconds,
            )
        else:
            store = InMemoryConversationStore(max_messages=config.memory.max_history_messages)

        cache_provider = None
        if api_key:
            cache_provider = GeminiContextCacheProvider(
                api_key=api_key,
                base_url=config.cache.base_url,
                timeout=config.cache.request_timeout,
            )

        embeddings = LiteLLMEmbeddingProvider(
            model=config.retrieval.embedding_model,
            api_key=api_key,
            api_base=config.provider.api_base,
        )
        return cls(provider, store, config=config, cache_provider=cache_provider, embeddings=embeddings)

    def validate(self, user_text: str, options: TurnOptions) -> None:
        """Reject a turn before any streaming starts."""
        if not user_text or not user_text.strip():
            raise ValidationError("Missing message")
        if options.engine not in ENGINES:
            raise ValidationError(f"Unknown engine: {options.engine}")
        if options.keyword_weight is not None and not 0.0 <= options.keyword_weight <= 1.0:
            raise ValidationError("keyword_weight must be between 0 and 1")
        if options.history is not None and not isinstance(options.history, list):
            raise ValidationError("history must be a list of messages")

    def _session(
        self,
        turn: Turn,
        document: DocumentRef | None,
        options: TurnOptions,
        sink: DownstreamSink,
    ) -> StreamSession:
        return StreamSession(
            turn,
            document=document,
            options=options,
            sink=sink,
            assembler=self.assembler,
            memory=self.memory,
            streams=self.streams,
            accountant=self.accountant,
            prompts=self.config.prompts,
            default_model=self.default_model,
            include_thoughts=self.config.model.include_thoughts,
        )

    async def run_turn(
        self,
        conversation_id: str,
        document: DocumentRef | None,
        user_text: str,
        sink: DownstreamSink,
        options: TurnOptions | None = None,
        *,
        connection: ConnectionState | None = None,
    ) -> Turn:
        """Stream one turn into *sink*; returns the finished :class:`Turn`."""
        options = options or TurnOptions()
        self.validate(user_text, options)
        turn = Turn(conversation_id=conversation_id, user_text=user_text.strip())
        if connection is not None:
            if connection.busy and connection.task is not asyncio.current_task():
                logger.warning(
                    "turn_overlaps",
                    connection_id=connection.connection_id,
                    previous_turn=connection.turn_id,
                )
            connection.turn_id = turn.turn_id
        return await self._session(turn, document, options, sink).run()

    def start_turn(
        self,
        conversation_id: str,
        document: DocumentRef | None,
        user_text: str,
        options: TurnOptions | None = None,
        *,
        connection: ConnectionState | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Validate a turn and return the stream of its events.

        Raises:
            ValidationError: before any event when the turn is rejected.
        """
        options = options or TurnOptions()
        self.validate(user_text, options)
        return self._iter_turn(conversation_id, document, user_text, options, connection)

    async def _iter_turn(
        self,
        conversation_id: str,
        document: DocumentRef | None,
        user_text: str,
        options: TurnOptions,
        connection: ConnectionState | None,
    ) -> AsyncIterator[StreamEvent]:
        sink = QueueSink()

        async def _run() -> Turn:
            try:
                return await self.run_turn(conversation_id, document, user_text, sink, options, connection=connection)
            finally:
                await sink.close()

        task = asyncio.create_task(_run())
        if connection is not None:
            connection.task = task
        finished = False
        try:
            async for event in sink:
                yield event
            finished = True
        finally:
            if finished:
                await task
            else:
                # The reader left early; the session notices on its next write.
                sink.disconnect()
                self._detached.add(task)
                task.add_done_callback(self._on_detached_done)

    def _on_detached_done(self, task: asyncio.Task[Any]) -> None:
        self._detached.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("detached_turn_failed", error=str(task.exception()))

    async def ensure_cache(
        self,
        document: DocumentRef,
        model: str | None = None,
        ttl: int | None = None,
    ) -> CacheEntry:
        """Create (or reuse) the context cache for *document*."""
        if self.cache_registry is None:
            raise ValidationError("Context caching is not configured")
        if not document.text:
            raise ValidationError("Document has no extracted text")
        title = document.title or self.config.prompts.unknown_title
        return await self.cache_registry.ensure(
            document.fingerprint or "",
            model or self.default_model,
            document.text,
            ttl,
            system_instruction=self.config.prompts.cache_instruction.format(title=title),
        )

    async def list_caches(self) -> list[CacheEntry]:
        if self.cache_registry is None:
            return []
        return await self.cache_registry.list_entries()

    async def delete_cache(self, fingerprint: str) -> bool:
        if self.cache_registry is None:
            return False
        return await self.cache_registry.delete(fingerprint)

    async def get_history(self, conversation_id: str) -> MemoryContext:
        return await self.memory.get_context(conversation_id)

    async def compact(self, conversation_id: str) -> bool:
        return await self.memory.compact(conversation_id)

    async def clear(self, conversation_id: str) -> None:
        await self.memory.clear(conversation_id)

    async def aclose(self) -> None:
        """Wait for background work and release the store connection."""
        if self._detached:
            await asyncio.gather(*self._detached, return_exceptions=True)
        await self.memory.jobs.drain()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()
