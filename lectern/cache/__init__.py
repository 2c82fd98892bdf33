"""Remote context caches keyed by document fingerprint."""

from lectern.cache.base import ContextCacheProvider, RemoteCache
from lectern.cache.gemini import GeminiContextCacheProvider
from lectern.cache.registry import CacheEntry, ContentCacheRegistry, estimate_tokens

__all__ = [
    "CacheEntry",
    "ContentCacheRegistry",
    "ContextCacheProvider",
    "GeminiContextCacheProvider",
    "RemoteCache",
    "estimate_tokens",
]
