"""Document handles passed explicitly into every turn."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Protocol


@dataclass
class RetrievedChunk:
    text: str
    score: float  # 0..1, descending in result lists


class HybridRetriever(Protocol):
    """Vector + keyword search over one document's chunk index."""

    async def hybrid_search(
        self,
        query: str,
        query_vector: list[float],
        top_k: int,
        keyword_weight: float,
    ) -> list[RetrievedChunk]: ...


def fingerprint(text: str) -> str:
    """Content hash of extracted document text, used as the cache key."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


@dataclass
class DocumentRef:
    """
    A document the user is talking about.

    ``text`` is the already-extracted plain text (parsing happens elsewhere);
    ``retriever`` is present only when a chunk index exists for the document.
    """

    doc_id: str
    title: str | None = None
    authors: str | None = None
    text: str | None = None
    retriever: HybridRetriever | None = None

    @property
    def fingerprint(self) -> str | None:
        if not self.text:
            return None
        return fingerprint(self.text)

    @property
    def has_index(self) -> bool:
        return self.retriever is not None
