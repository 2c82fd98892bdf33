"""Base LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


@dataclass
class LLMResponse:
    """Final result of one streamed model call."""

    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, Any] = field(default_factory=dict)
    reasoning_content: str | None = None
    model: str | None = None

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"


@dataclass
class StreamOptions:
    """Per-call switches for the upstream stream.

    ``cached_content`` names a provider-side context cache to attach instead of
    re-sending the document text.
    """

    enable_search: bool = False
    enable_tools: bool = False
    tools: list[dict[str, Any]] | None = None
    cached_content: str | None = None
    include_thoughts: bool = True
    max_tokens: int | None = None
    temperature: float | None = None


class LLMProvider(ABC):
    """
    Abstract base class for model providers.

    Implementations stream provider-agnostic events:
    ``{"type": "text_delta", "delta": str}``,
    ``{"type": "thinking_delta", "delta": str}`` and a final
    ``{"type": "done", "response": LLMResponse}``. Failures are reported as a
    ``done`` event whose response has ``finish_reason == "error"``.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    def stream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        options: StreamOptions | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream a chat completion as provider-agnostic events."""

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
