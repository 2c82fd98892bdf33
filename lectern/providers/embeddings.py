"""Embedding provider backed by LiteLLM."""

from __future__ import annotations

from typing import Any, Protocol

from litellm import aembedding

from lectern.errors import ProviderError
from lectern.logging import get_logger, mask_in

logger = get_logger(__name__)


class EmbeddingProvider(Protocol):
    async def embed_query(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class LiteLLMEmbeddingProvider:
    """Query and document embeddings via ``litellm.aembedding``.

    Gemini embedding models distinguish query and document vectors through
    ``task_type``; other providers ignore it (``drop_params``).
    """

    def __init__(
        self,
        model: str = "gemini/text-embedding-004",
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout

    async def _embed(self, texts: list[str], task_type: str) -> list[list[float]]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": texts,
            "task_type": task_type,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.timeout:
            kwargs["timeout"] = self.timeout

        try:
            response = await aembedding(**kwargs)
        except Exception as e:
            error_msg = mask_in(str(e), self.api_key)
            logger.warning("embedding_failed", model=self.model, count=len(texts), error=error_msg)
            raise ProviderError(error_msg, provider="embedding") from e

        data = response["data"] if isinstance(response, dict) else getattr(response, "data", None)
        vectors: list[list[float]] = []
        for item in data or []:
            vector = item["embedding"] if isinstance(item, dict) else getattr(item, "embedding", None)
            vectors.append(list(vector or []))
        if len(vectors) != len(texts) or any(not v for v in vectors):
            raise ProviderError(
                f"Embedding response returned {len(vectors)} vectors for {len(texts)} inputs",
                provider="embedding",
            )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self._embed([text], "RETRIEVAL_QUERY")
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self._embed(texts, "RETRIEVAL_DOCUMENT")
