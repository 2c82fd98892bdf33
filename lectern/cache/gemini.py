"""Gemini ``cachedContents`` REST adapter."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from lectern.cache.base import RemoteCache, display_name_for, normalize_model
from lectern.errors import ProviderError
from lectern.logging import get_logger, mask_in

logger = get_logger(__name__)

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_expire_time(value: str | None) -> datetime | None:
    """Parse RFC 3339 timestamps such as ``2025-01-01T10:00:00.123456789Z``."""
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # Gemini returns nanoseconds; datetime accepts at most microseconds.
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("cache_expire_time_unparsed", value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GeminiContextCacheProvider:
    """Create, find, list and delete Gemini context caches.

    The document fingerprint is stored in the cache's ``displayName`` so
    ``find`` can resolve a fingerprint without a local index.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            if self._client is not None:
                r = await self._client.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(self._mask(f"Cache provider request failed: {e}"), provider="context_cache") from e

        if r.status_code not in (200, 204):
            try:
                message = r.json().get("error", {}).get("message") or r.text
            except ValueError:
                message = r.text
            logger.warning("cache_provider_http_error", method=method, path=path, status=r.status_code)
            raise ProviderError(self._mask(f"HTTP {r.status_code}: {message}"), provider="context_cache")
        if r.status_code == 204 or not r.content:
            return {}
        return r.json()

    def _mask(self, text: str) -> str:
        return mask_in(text, self.api_key)

    @staticmethod
    def _to_remote(data: dict[str, Any], ttl: int | None = None) -> RemoteCache:
        usage = data.get("usageMetadata") or {}
        expire_time = parse_expire_time(data.get("expireTime"))
        if expire_time is None and ttl:
            expire_time = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        return RemoteCache(
            name=data.get("name", ""),
            model=normalize_model(data.get("model", "")),
            display_name=data.get("displayName"),
            token_count=int(usage.get("totalTokenCount", 0) or 0),
            expire_time=expire_time,
        )

    async def create(
        self,
        text: str,
        *,
        model: str,
        ttl: int,
        display_name: str | None = None,
        system_instruction: str | None = None,
    ) -> RemoteCache:
        payload: dict[str, Any] = {
            "model": f"models/{normalize_model(model)}",
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "ttl": f"{ttl}s",
        }
        if display_name:
            payload["displayName"] = display_name
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        data = await self._request("POST", "cachedContents", json=payload)
        if not data.get("name"):
            raise ProviderError("Cache provider returned no cache name", provider="context_cache")
        remote = self._to_remote(data, ttl=ttl)
        logger.info(
            "cache_created",
            name=remote.name,
            model=remote.model,
            tokens=remote.token_count,
            ttl=ttl,
        )
        return remote

    async def list(self) -> list[RemoteCache]:
        caches: list[RemoteCache] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            data = await self._request("GET", "cachedContents", params=params)
            caches.extend(self._to_remote(item) for item in data.get("cachedContents", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return caches

    async def find(self, fingerprint: str) -> RemoteCache | None:
        wanted = display_name_for(fingerprint)
        for remote in await self.list():
            if remote.display_name == wanted and not remote.is_expired():
                return remote
        return None

    async def get(self, name: str) -> RemoteCache | None:
        try:
            data = await self._request("GET", name)
        except ProviderError as e:
            if "HTTP 404" in e.message:
                return None
            raise
        return self._to_remote(data)

    async def delete(self, name: str) -> None:
        await self._request("DELETE", name)
        logger.info("cache_deleted", name=name)
