"""Content-addressed registry of remote context caches."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator

from lectern.cache.base import ContextCacheProvider, RemoteCache, display_name_for, normalize_model
from lectern.errors import ModelMismatchError, ValidationError
from lectern.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_TOKENS = {
    "gemini-2.5-flash": 1024,
    "gemini-2.5-pro": 4096,
    "gemini-2.5-flash-lite": 1024,
}


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four ASCII characters per token, one token per other character."""
    ascii_chars = sum(1 for ch in text if ord(ch) < 128)
    return ascii_chars // 4 + (len(text) - ascii_chars)


@dataclass
class CacheEntry:
    """A remote pre-loaded context bound to one model."""

    fingerprint: str
    model: str
    name: str
    token_count: int = 0
    expire_time: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expire_time is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expire_time

    def matches(self, model: str) -> bool:
        return normalize_model(model) == self.model

    @classmethod
    def from_remote(cls, fingerprint: str, remote: RemoteCache) -> CacheEntry:
        return cls(
            fingerprint=fingerprint,
            model=normalize_model(remote.model),
            name=remote.name,
            token_count=remote.token_count,
            expire_time=remote.expire_time,
        )


class ContentCacheRegistry:
    """
    Map document fingerprints to remote context caches.

    ``ensure`` is single-flight per fingerprint: concurrent callers for the
    same document wait on one lock and only the first one creates the remote
    cache. Entries are bound to the model they were created for; asking for
    another model raises :class:`ModelMismatchError`.
    """

    def __init__(
        self,
        provider: ContextCacheProvider,
        *,
        min_tokens: dict[str, int] | None = None,
        default_min_tokens: int = 1024,
        default_ttl: int = 3600,
    ) -> None:
        self.provider = provider
        self.min_tokens = dict(min_tokens or DEFAULT_MIN_TOKENS)
        self.default_min_tokens = default_min_tokens
        self.default_ttl = default_ttl
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def min_tokens_for(self, model: str) -> int:
        return self.min_tokens.get(normalize_model(model), self.default_min_tokens)

    def meets_min_tokens(self, text: str, model: str) -> bool:
        return estimate_tokens(text) >= self.min_tokens_for(model)

    @asynccontextmanager
    async def _locked(self, fingerprint: str) -> AsyncIterator[None]:
        """Hold the fingerprint's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(fingerprint)
        if lock is None:
            lock = self._locks[fingerprint] = asyncio.Lock()
        self._lock_users[fingerprint] = self._lock_users.get(fingerprint, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[fingerprint] -= 1
            if self._lock_users[fingerprint] == 0:
                del self._lock_users[fingerprint]
                del self._locks[fingerprint]

    def _local(self, fingerprint: str) -> CacheEntry | None:
        entry = self._entries.get(fingerprint)
        if entry is not None and entry.is_expired():
            logger.info("cache_entry_expired", fingerprint=fingerprint, name=entry.name)
            self._entries.pop(fingerprint, None)
            return None
        return entry

    async def lookup(self, fingerprint: str, model: str | None = None) -> CacheEntry | None:
        """
        Return the valid entry for *fingerprint*, asking the provider on a local miss.

        Raises:
            ModelMismatchError: an entry exists but is bound to a model other than *model*.
            ProviderError: the provider lookup failed.
        """
        entry = self._local(fingerprint)
        if entry is None:
            remote = await self.provider.find(fingerprint)
            if remote is not None and not remote.is_expired():
                entry = CacheEntry.from_remote(fingerprint, remote)
                self._entries[fingerprint] = entry
                logger.debug("cache_entry_discovered", fingerprint=fingerprint, name=entry.name)

        if entry is not None and model is not None and not entry.matches(model):
            raise ModelMismatchError(requested_model=normalize_model(model), cached_model=entry.model)
        return entry

    async def ensure(
        self,
        fingerprint: str,
        model: str,
        text: str,
        ttl: int | None = None,
        *,
        system_instruction: str | None = None,
    ) -> CacheEntry:
        """Return the entry for *fingerprint*, creating the remote cache at most once."""
        async with self._locked(fingerprint):
            entry = await self.lookup(fingerprint, model)
            if entry is not None:
                return entry

            if not self.meets_min_tokens(text, model):
                raise ValidationError(
                    f"Document too small for a context cache: about {estimate_tokens(text)} tokens, "
                    f"{self.min_tokens_for(model)} required for {normalize_model(model)}"
                )

            remote = await self.provider.create(
                text,
                model=model,
                ttl=ttl or self.default_ttl,
                display_name=display_name_for(fingerprint),
                system_instruction=system_instruction,
            )
            entry = CacheEntry.from_remote(fingerprint, remote)
            if not entry.model:
                entry.model = normalize_model(model)
            self._entries[fingerprint] = entry
            logger.info(
                "cache_entry_created",
                fingerprint=fingerprint,
                name=entry.name,
                model=entry.model,
                tokens=entry.token_count,
            )
            return entry

    async def delete(self, fingerprint: str) -> bool:
        """Delete the remote cache for *fingerprint*. Returns False when none exists."""
        entry = self._entries.pop(fingerprint, None)
        if entry is None:
            remote = await self.provider.find(fingerprint)
            if remote is None:
                return False
            entry = CacheEntry.from_remote(fingerprint, remote)
        await self.provider.delete(entry.name)
        logger.info("cache_entry_deleted", fingerprint=fingerprint, name=entry.name)
        return True

    async def list_entries(self) -> list[CacheEntry]:
        """List live remote caches created by this registry (``doc:`` display names)."""
        entries: list[CacheEntry] = []
        for remote in await self.provider.list():
            fp = remote.fingerprint
            if fp is None or remote.is_expired():
                continue
            entries.append(CacheEntry.from_remote(fp, remote))
        return entries
