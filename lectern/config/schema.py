"""Configuration schema using Pydantic."""

from __future__ import annotations

import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_REF_RE = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; unknown variables are returned unchanged."""
    if not value:
        return value
    m = _ENV_REF_RE.match(value.strip())
    if not m:
        return value
    return os.environ.get(m.group(1), value)


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderConfig(Base):
    """Credentials and endpoint for the model provider."""

    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key)


class ModelConfig(Base):
    default_model: str = "gemini/gemini-2.5-flash"
    max_tokens: int = 8192
    temperature: float = 0.7
    include_thoughts: bool = True
    timeout: float = 120.0
    max_retries: int = 1
    circuit_breaker_threshold: int = 0
    circuit_breaker_cooldown: float = 60.0


class MemoryConfig(Base):
    """Conversation memory bounds (message counts, not rounds)."""

    max_history_messages: int = 40
    summarize_threshold_messages: int = 16
    keep_recent_messages: int = 8
    history_ttl_seconds: int = 3600


class CacheConfig(Base):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    default_ttl_seconds: int = 3600
    request_timeout: float = 120.0
    min_tokens: dict[str, int] = Field(default_factory=lambda: {
        "gemini-2.5-flash": 1024,
        "gemini-2.5-pro": 4096,
        "gemini-2.5-flash-lite": 1024,
    })
    default_min_tokens: int = 1024


class RetrievalConfig(Base):
    embedding_model: str = "gemini/text-embedding-004"
    top_k: int = 5
    keyword_weight: float = 0.5
    preview_chars: int = 200


class StoreConfig(Base):
    """Conversation KV store. ``backend`` is ``memory`` or ``redis``."""

    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "lectern:"


class PromptTemplates(Base):
    """Prompt fragments used to assemble system prompts and compaction requests."""

    chat_system: str = (
        "You are a friendly, knowledgeable AI assistant. Answer questions and offer useful insights."
    )
    book_intro: str = "I wish to discuss the following book. "
    book_template: str = "The book is: {title} by {authors}."
    separator: str = "\n---------------\n\n"
    markdown_instruction: str = (
        " When you answer the questions use markdown formatting for the answers wherever possible."
    )
    unknown_single: str = (
        " If the specified book is unknown to you instead of answering the following questions"
        " just say the book is unknown."
    )
    language_instruction: str = "If you can speak in {language}, then respond in {language}."
    language: str = "English"
    rag_book_intro: str = "I am discussing the book: {title}"
    rag_author_template: str = " by {authors}"
    rag_system: str = (
        "You are a knowledgeable book analysis assistant. {book_info}\n\n"
        "I have retrieved the following relevant passages from this book to help answer questions:\n\n"
        "{context}\n\n"
        "Instructions:\n"
        "1. Answer questions based PRIMARILY on the retrieved passages above\n"
        "2. If the passages contain relevant information, cite them in your answer\n"
        "3. If the passages don't contain enough information, you may supplement with your general"
        " knowledge, but clearly indicate this\n"
        "4. Use markdown formatting for better readability\n"
        "5. Be accurate and avoid making up information not in the text\n"
        "6. Respond in the user's language"
    )
    chunk_template: str = "[Passage {index}]\n{text}\n"
    relevance_template: str = "(Relevance: {score}%)\n\n"
    cached_system: str = (
        "You are a professional book analysis assistant. The full text of {title} has been"
        " provided to you. Answer the user's questions based on the book's content."
    )
    cache_instruction: str = (
        "You are a professional book analysis assistant. The following is the complete content of"
        " the book {title}. Answer user questions based on the book's content."
    )
    full_text_system: str = (
        "You are a professional book analysis assistant. {book_info}\n\n"
        "The complete text of the book follows:\n\n{text}\n\n"
        "Answer the user's questions based on the book's content."
    )
    summary_label: str = "[Conversation summary]"
    previous_summary_label: str = "[Previous summary]"
    new_conversation_label: str = "[New conversation]"
    summarize_instruction: str = (
        "Concisely summarize the key points of the conversation above, including: 1) the main"
        " topics the user discussed 2) the key information and conclusions the AI gave 3) any"
        " important background context. Keep the summary short (100-200 words) so it can be"
        " referenced in later turns."
    )
    role_names: dict[str, str] = Field(default_factory=lambda: {"user": "User", "assistant": "AI"})
    source_texts: dict[str, str] = Field(default_factory=lambda: {
        "google": "Model pretrained knowledge + live web search",
        "mcp": "Model pretrained knowledge + tool use",
        "off": "Model pretrained knowledge only (search disabled)",
    })
    cache_source_template: str = "Context cache ({tokens} tokens, {model})"
    full_text_source: str = "Full text, cache not applicable"
    unknown_title: str = "Unknown book"
    unknown_author: str = "Unknown author"


class LoggingConfig(Base):
    json_output: bool = True
    level: str = "INFO"


class Config(BaseSettings):
    """Root configuration for lectern."""

    model_config = SettingsConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        env_prefix="LECTERN_",
        env_nested_delimiter="__",
    )

    workspace: str = "~/.lectern"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    prompts: PromptTemplates = Field(default_factory=PromptTemplates)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.workspace).expanduser()
