"""Model, embedding and streaming providers."""

from lectern.providers.base import LLMProvider, LLMResponse, StreamOptions
from lectern.providers.embeddings import EmbeddingProvider, LiteLLMEmbeddingProvider
from lectern.providers.litellm_provider import LiteLLMProvider
from lectern.providers.streams import UpstreamStreams

__all__ = [
    "EmbeddingProvider",
    "LLMProvider",
    "LLMResponse",
    "LiteLLMEmbeddingProvider",
    "LiteLLMProvider",
    "StreamOptions",
    "UpstreamStreams",
]
