"""Conversation history stores (in-memory and Redis)."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import redis.asyncio as redis

from lectern.errors import ProviderError
from lectern.logging import get_logger

logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Summary:
    """A compacted, model-written digest of older conversation rounds."""

    text: str
    rounds_summarized: int = 0
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Summary:
        return cls(
            text=data.get("text", ""),
            rounds_summarized=int(data.get("rounds_summarized", 0)),
            created_at=data.get("created_at") or _now_iso(),
            updated_at=data.get("updated_at") or _now_iso(),
        )


class ConversationStore(Protocol):
    """KV contract for conversation history and summaries.

    ``append_history`` must be safe under concurrent callers.
    ``set_summary_and_trim`` writes the summary and drops the oldest
    ``drop_count`` history entries as one atomic step.
    """

    async def get_history(self, conversation_id: str) -> list[dict[str, Any]]: ...

    async def append_history(self, conversation_id: str, message: dict[str, Any]) -> int: ...

    async def get_summary(self, conversation_id: str) -> Summary | None: ...

    async def set_summary_and_trim(self, conversation_id: str, summary: Summary, drop_count: int) -> None: ...

    async def get_turn_count(self, conversation_id: str) -> int: ...

    async def clear(self, conversation_id: str) -> None: ...


@dataclass
class ConversationState:
    messages: list[dict[str, Any]] = field(default_factory=list)
    summary: Summary | None = None
    turn_count: int = 0


class InMemoryConversationStore:
    """Process-local store; each mutation holds a per-conversation lock."""

    def __init__(self, max_messages: int = 40) -> None:
        self.max_messages = max_messages
        self._states: dict[str, ConversationState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _state(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationState()
            self._states[conversation_id] = state
        return state

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def get_history(self, conversation_id: str) -> list[dict[str, Any]]:
        state = self._states.get(conversation_id)
        return [dict(m) for m in state.messages] if state else []

    async def append_history(self, conversation_id: str, message: dict[str, Any]) -> int:
        async with self._lock(conversation_id):
            state = self._state(conversation_id)
            state.messages.append(dict(message))
            if message.get("role") == "user":
                state.turn_count += 1
            if len(state.messages) > self.max_messages:
                del state.messages[: len(state.messages) - self.max_messages]
            return len(state.messages)

    async def get_summary(self, conversation_id: str) -> Summary | None:
        state = self._states.get(conversation_id)
        return state.summary if state else None

    async def set_summary_and_trim(self, conversation_id: str, summary: Summary, drop_count: int) -> None:
        async with self._lock(conversation_id):
            state = self._state(conversation_id)
            state.summary = summary
            if drop_count > 0:
                del state.messages[:drop_count]

    async def get_turn_count(self, conversation_id: str) -> int:
        state = self._states.get(conversation_id)
        return state.turn_count if state else 0

    async def clear(self, conversation_id: str) -> None:
        async with self._lock(conversation_id):
            self._states.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)


class RedisConversationStore:
    """
    Redis-backed store.

    Key structure:
    - ``{prefix}history:{id}`` - list of JSON messages, capped with LTRIM
    - ``{prefix}summary:{id}`` - JSON summary
    - ``{prefix}turns:{id}`` - turn counter

    All keys share the history TTL, refreshed on every write.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        key_prefix: str = "lectern:",
        max_messages: int = 40,
        ttl_seconds: int = 3600,
    ) -> None:
        self._client = client
        self._prefix = key_prefix
        self.max_messages = max_messages
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisConversationStore:
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _history_key(self, conversation_id: str) -> str:
        return f"{self._prefix}history:{conversation_id}"

    def _summary_key(self, conversation_id: str) -> str:
        return f"{self._prefix}summary:{conversation_id}"

    def _turns_key(self, conversation_id: str) -> str:
        return f"{self._prefix}turns:{conversation_id}"

    @staticmethod
    def _fail(op: str, conversation_id: str, e: Exception) -> ProviderError:
        logger.error("redis_store_error", op=op, conversation_id=conversation_id, error=str(e))
        return ProviderError(f"Conversation store {op} failed: {e}", provider="redis")

    async def get_history(self, conversation_id: str) -> list[dict[str, Any]]:
        try:
            raw = await self._client.lrange(self._history_key(conversation_id), 0, -1)
        except redis.RedisError as e:
            raise self._fail("get_history", conversation_id, e) from e
        messages: list[dict[str, Any]] = []
        for item in raw:
            try:
                messages.append(json.loads(item))
            except json.JSONDecodeError:
                logger.warning("history_entry_invalid", conversation_id=conversation_id)
        return messages

    async def append_history(self, conversation_id: str, message: dict[str, Any]) -> int:
        key = self._history_key(conversation_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, json.dumps(message, ensure_ascii=False))
                pipe.ltrim(key, -self.max_messages, -1)
                pipe.expire(key, self.ttl_seconds)
                if message.get("role") == "user":
                    pipe.incr(self._turns_key(conversation_id))
                    pipe.expire(self._turns_key(conversation_id), self.ttl_seconds)
                results = await pipe.execute()
        except redis.RedisError as e:
            raise self._fail("append_history", conversation_id, e) from e
        return min(int(results[0]), self.max_messages)

    async def get_summary(self, conversation_id: str) -> Summary | None:
        try:
            raw = await self._client.get(self._summary_key(conversation_id))
        except redis.RedisError as e:
            raise self._fail("get_summary", conversation_id, e) from e
        if not raw:
            return None
        try:
            return Summary.from_dict(json.loads(raw))
        except (json.JSONDecodeError, AttributeError):
            logger.warning("summary_invalid", conversation_id=conversation_id)
            return None

    async def set_summary_and_trim(self, conversation_id: str, summary: Summary, drop_count: int) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(
                    self._summary_key(conversation_id),
                    json.dumps(summary.to_dict(), ensure_ascii=False),
                    ex=self.ttl_seconds,
                )
                if drop_count > 0:
                    pipe.ltrim(self._history_key(conversation_id), drop_count, -1)
                pipe.expire(self._history_key(conversation_id), self.ttl_seconds)
                await pipe.execute()
        except redis.RedisError as e:
            raise self._fail("set_summary_and_trim", conversation_id, e) from e

    async def get_turn_count(self, conversation_id: str) -> int:
        try:
            raw = await self._client.get(self._turns_key(conversation_id))
        except redis.RedisError as e:
            raise self._fail("get_turn_count", conversation_id, e) from e
        return int(raw) if raw else 0

    async def clear(self, conversation_id: str) -> None:
        try:
            await self._client.delete(
                self._history_key(conversation_id),
                self._summary_key(conversation_id),
                self._turns_key(conversation_id),
            )
        except redis.RedisError as e:
            raise self._fail("clear", conversation_id, e) from e

    async def close(self) -> None:
        await self._client.aclose()
