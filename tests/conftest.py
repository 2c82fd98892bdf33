"""Shared fakes for provider, cache and transport collaborators."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from lectern.cache.base import RemoteCache, display_name_for, normalize_model
from lectern.documents import RetrievedChunk
from lectern.errors import ProviderError
from lectern.providers.base import LLMProvider, LLMResponse, StreamOptions

HOLD = "hold"


def text(delta: str) -> dict[str, Any]:
    return {"type": "text_delta", "delta": delta}


def thought(delta: str) -> dict[str, Any]:
    return {"type": "thinking_delta", "delta": delta}


def done(content: str | None, usage: dict[str, Any] | None = None, model: str | None = None) -> dict[str, Any]:
    return {
        "type": "done",
        "response": LLMResponse(content=content, usage=usage or {}, model=model),
    }


def failed(message: str) -> dict[str, Any]:
    return {"type": "done", "response": LLMResponse(content=message, finish_reason="error")}


class ScriptedProvider(LLMProvider):
    """Plays back one scripted event list per ``stream_chat`` call.

    A ``HOLD`` item blocks until ``release`` is called.
    """

    def __init__(self, scripts: list[list[Any]] | None = None, default_model: str = "gemini/gemini-2.5-flash"):
        super().__init__(api_key=None)
        self.scripts = list(scripts or [])
        self.default_model = default_model
        self.calls: list[dict[str, Any]] = []
        self.released = asyncio.Event()
        self.cancelled = asyncio.Event()
        self.cancel_count = 0

    def release(self) -> None:
        self.released.set()

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        options: StreamOptions | None = None,
    ):
        self.calls.append({"messages": messages, "model": model, "options": options})
        script = self.scripts.pop(0) if self.scripts else [text("ok"), done("ok")]
        try:
            for item in script:
                if item == HOLD:
                    await self.released.wait()
                    continue
                yield item
        except asyncio.CancelledError:
            self.cancel_count += 1
            self.cancelled.set()
            raise

    def get_default_model(self) -> str:
        return self.default_model


class FakeCacheProvider:
    """In-memory stand-in for the remote context-cache API."""

    def __init__(self, *, token_count: int = 5000, delay: float = 0.0, fail: bool = False):
        self.token_count = token_count
        self.delay = delay
        self.fail = fail
        self.caches: dict[str, RemoteCache] = {}
        self.create_calls: list[dict[str, Any]] = []
        self.deleted: list[str] = []

    def add(self, fingerprint: str, model: str, *, expired: bool = False) -> RemoteCache:
        offset = timedelta(hours=-1) if expired else timedelta(hours=1)
        remote = RemoteCache(
            name=f"cachedContents/{fingerprint[:8]}",
            model=normalize_model(model),
            display_name=display_name_for(fingerprint),
            token_count=self.token_count,
            expire_time=datetime.now(timezone.utc) + offset,
        )
        self.caches[remote.name] = remote
        return remote

    async def create(self, text, *, model, ttl, display_name=None, system_instruction=None) -> RemoteCache:
        self.create_calls.append({
            "model": model,
            "ttl": ttl,
            "display_name": display_name,
            "system_instruction": system_instruction,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError("HTTP 500: backend unavailable", provider="context_cache")
        remote = RemoteCache(
            name=f"cachedContents/c{len(self.create_calls)}",
            model=normalize_model(model),
            display_name=display_name,
            token_count=self.token_count,
            expire_time=datetime.now(timezone.utc) + timedelta(seconds=ttl),
        )
        self.caches[remote.name] = remote
        return remote

    async def find(self, fingerprint: str) -> RemoteCache | None:
        if self.fail:
            raise ProviderError("HTTP 500: backend unavailable", provider="context_cache")
        wanted = display_name_for(fingerprint)
        for remote in self.caches.values():
            if remote.display_name == wanted and not remote.is_expired():
                return remote
        return None

    async def list(self) -> list[RemoteCache]:
        return list(self.caches.values())

    async def delete(self, name: str) -> None:
        self.caches.pop(name, None)
        self.deleted.append(name)


class FakeEmbeddings:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.queries: list[str] = []

    async def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        if self.fail:
            raise ProviderError("quota exceeded", provider="embedding")
        return [0.1, 0.2, 0.3]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [[0.1, 0.2, 0.3] for _ in texts]


class FakeRetriever:
    def __init__(self, chunks: list[RetrievedChunk] | None = None, fail: bool = False, crash: bool = False):
        self.chunks = chunks or []
        self.fail = fail
        self.crash = crash
        self.calls: list[tuple[str, list[float], int, float]] = []

    async def hybrid_search(self, query, query_vector, top_k, keyword_weight):
        self.calls.append((query, query_vector, top_k, keyword_weight))
        if self.fail:
            raise ProviderError("index unavailable", provider="retrieval")
        if self.crash:
            raise RuntimeError("index corrupted")
        return self.chunks[:top_k]


class RecordingSink:
    """Collects events; after ``alive_writes`` successful writes every write fails."""

    def __init__(self, alive_writes: int | None = None):
        self.alive_writes = alive_writes
        self.events: list[dict[str, Any]] = []
        self.attempts = 0
        self.closed = False

    async def write(self, event) -> bool:
        self.attempts += 1
        if self.alive_writes is not None and len(self.events) >= self.alive_writes:
            return False
        self.events.append(event)
        return True

    async def close(self) -> None:
        self.closed = True

    @property
    def types(self) -> list[str]:
        return [e["type"] for e in self.events]


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def cache_provider() -> FakeCacheProvider:
    return FakeCacheProvider()
