"""Choose and build the context-assembly strategy for a turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from lectern.cache.registry import CacheEntry, ContentCacheRegistry
from lectern.config.schema import PromptTemplates, RetrievalConfig
from lectern.documents import DocumentRef, RetrievedChunk
from lectern.errors import ProviderError
from lectern.logging import get_logger
from lectern.providers.embeddings import EmbeddingProvider
from lectern.session.events import SourceItem
from lectern.session.options import TurnOptions

logger = get_logger(__name__)

MODE_CACHED = "cached-context"
MODE_FULL_TEXT = "full-text"
MODE_RAG = "retrieval-augmented"
MODE_PLAIN = "plain-knowledge"

T = TypeVar("T")


@dataclass
class Ok(Generic[T]):
    value: T


@dataclass
class Err:
    error: ProviderError


Result = Ok[T] | Err


@dataclass
class AssembledContext:
    system_prompt: str
    mode: str
    sources: list[SourceItem] = field(default_factory=list)
    cached_content: str | None = None


class ContextAssembler:
    """
    Build the system prompt and source list for one turn.

    Strategies are tried in order: cached context, full text (document too
    small to cache), retrieval-augmented, plain knowledge. Cache and
    retrieval failures demote to the next strategy; only a cache bound to a
    different model (:class:`ModelMismatchError`) aborts the turn.
    """

    def __init__(
        self,
        registry: ContentCacheRegistry | None = None,
        embeddings: EmbeddingProvider | None = None,
        *,
        prompts: PromptTemplates | None = None,
        retrieval: RetrievalConfig | None = None,
        default_model: str = "gemini/gemini-2.5-flash",
    ) -> None:
        self.registry = registry
        self.embeddings = embeddings
        self.prompts = prompts or PromptTemplates()
        self.retrieval = retrieval or RetrievalConfig()
        self.default_model = default_model

    async def assemble(
        self,
        document: DocumentRef | None,
        user_text: str,
        options: TurnOptions,
    ) -> AssembledContext:
        model = options.model or self.default_model

        if document is None:
            return self._chat(options)

        if options.use_cache and document.text and self.registry is not None:
            cached = await self._cache_entry(document, model, options.cache_ttl)
            if isinstance(cached, Ok) and cached.value is not None:
                return self._cached(document, cached.value)
            if isinstance(cached, Err):
                logger.warning("assembly_cache_unavailable", doc_id=document.doc_id, error=cached.error.message)
            if not self.registry.meets_min_tokens(document.text, model):
                logger.info("assembly_full_text", doc_id=document.doc_id, reason="below_cache_minimum")
                return self._full_text(document)

        if options.rag and document.has_index and self.embeddings is not None:
            retrieved = await self._retrieve(document, user_text, options)
            if isinstance(retrieved, Ok) and retrieved.value:
                return self._rag(document, retrieved.value)
            if isinstance(retrieved, Err):
                logger.warning("assembly_rag_failed", doc_id=document.doc_id, error=retrieved.error.message)
            else:
                logger.info("assembly_rag_empty", doc_id=document.doc_id)

        return self._plain(document, options)

    async def _cache_entry(
        self,
        document: DocumentRef,
        model: str,
        ttl: int | None,
    ) -> Result[CacheEntry | None]:
        """
        Find the document's cache, creating one when none exists and the document is large enough.

        An existing cache is looked up before the size check, so a cache bound to
        another model raises :class:`ModelMismatchError` whatever the document size.
        """
        assert self.registry is not None and document.text is not None
        fp = document.fingerprint or ""
        title = document.title or self.prompts.unknown_title
        try:
            entry = await self.registry.lookup(fp, model)
            if entry is None and self.registry.meets_min_tokens(document.text, model):
                entry = await self.registry.ensure(
                    fp,
                    model,
                    document.text,
                    ttl,
                    system_instruction=self.prompts.cache_instruction.format(title=title),
                )
        except ProviderError as e:
            return Err(e)
        return Ok(entry)

    async def _retrieve(
        self,
        document: DocumentRef,
        user_text: str,
        options: TurnOptions,
    ) -> Result[list[RetrievedChunk]]:
        assert self.embeddings is not None and document.retriever is not None
        weight = self.retrieval.keyword_weight if options.keyword_weight is None else options.keyword_weight
        try:
            vector = await self.embeddings.embed_query(user_text)
            chunks = await document.retriever.hybrid_search(user_text, vector, self.retrieval.top_k, weight)
        except ProviderError as e:
            return Err(e)
        except Exception as e:
            return Err(ProviderError(f"Retrieval failed: {e}", provider="retrieval"))
        return Ok(list(chunks))

    def language_instruction(self) -> str:
        return self.prompts.language_instruction.format(language=self.prompts.language)

    def _book_info(self, document: DocumentRef) -> str:
        p = self.prompts
        book = p.book_template.format(
            title=document.title or p.unknown_title,
            authors=document.authors or p.unknown_author,
        )
        return f"{p.book_intro}{book}{p.separator}"

    def _chat(self, options: TurnOptions) -> AssembledContext:
        return AssembledContext(
            system_prompt=f"{self.prompts.chat_system} {self.language_instruction()}",
            mode=MODE_PLAIN,
            sources=[self._engine_source(options)],
        )

    def _engine_source(self, options: TurnOptions) -> SourceItem:
        texts = self.prompts.source_texts
        text = texts.get(options.effective_engine) or texts.get("off", "")
        return {"text": text, "score": 100}

    def _plain(self, document: DocumentRef, options: TurnOptions) -> AssembledContext:
        p = self.prompts
        prompt = f"{self._book_info(document)}{p.markdown_instruction}{p.unknown_single} {self.language_instruction()}"
        return AssembledContext(system_prompt=prompt, mode=MODE_PLAIN, sources=[self._engine_source(options)])

    def _full_text(self, document: DocumentRef) -> AssembledContext:
        prompt = self.prompts.full_text_system.format(
            book_info=self._book_info(document),
            text=document.text or "",
        )
        return AssembledContext(
            system_prompt=prompt,
            mode=MODE_FULL_TEXT,
            sources=[{"text": self.prompts.full_text_source, "score": 100}],
        )

    def _cached(self, document: DocumentRef, entry: CacheEntry) -> AssembledContext:
        p = self.prompts
        label = p.cache_source_template.format(tokens=entry.token_count, model=entry.model)
        return AssembledContext(
            system_prompt=p.cached_system.format(title=document.title or p.unknown_title),
            mode=MODE_CACHED,
            sources=[{"text": label, "score": 100}],
            cached_content=entry.name,
        )

    def _rag(self, document: DocumentRef, chunks: list[RetrievedChunk]) -> AssembledContext:
        p = self.prompts
        preview_chars = self.retrieval.preview_chars
        book_info = p.rag_book_intro.format(title=document.title or p.unknown_title)
        if document.authors:
            book_info += p.rag_author_template.format(authors=document.authors)

        context_parts: list[str] = []
        sources: list[SourceItem] = []
        for i, chunk in enumerate(chunks):
            score = round(chunk.score * 100, 1)
            context_parts.append(p.chunk_template.format(index=i + 1, text=chunk.text))
            context_parts.append(p.relevance_template.format(score=score))
            preview = chunk.text[:preview_chars]
            if len(chunk.text) > preview_chars:
                preview += "..."
            sources.append({"text": preview, "score": score})

        prompt = p.rag_system.format(book_info=book_info, context="".join(context_parts))
        return AssembledContext(system_prompt=prompt, mode=MODE_RAG, sources=sources)
