"""Remote context-cache provider interface."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

DISPLAY_NAME_PREFIX = "doc:"


def normalize_model(model: str) -> str:
    """``gemini/gemini-2.5-flash`` and ``models/gemini-2.5-flash`` both become ``gemini-2.5-flash``."""
    return model.strip().rsplit("/", 1)[-1]


def display_name_for(fingerprint: str) -> str:
    return f"{DISPLAY_NAME_PREFIX}{fingerprint}"


@dataclass
class RemoteCache:
    """A provider-side pre-loaded context."""

    name: str
    model: str
    display_name: str | None = None
    token_count: int = 0
    expire_time: datetime | None = None

    @property
    def fingerprint(self) -> str | None:
        if self.display_name and self.display_name.startswith(DISPLAY_NAME_PREFIX):
            return self.display_name[len(DISPLAY_NAME_PREFIX):]
        return None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expire_time is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expire_time


class ContextCacheProvider(Protocol):
    async def create(
        self,
        text: str,
        *,
        model: str,
        ttl: int,
        display_name: str | None = None,
        system_instruction: str | None = None,
    ) -> RemoteCache: ...

    async def find(self, fingerprint: str) -> RemoteCache | None: ...

    async def list(self) -> list[RemoteCache]: ...

    async def delete(self, name: str) -> None: ...
