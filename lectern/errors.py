"""Error taxonomy for turns, providers and transports."""

from __future__ import annotations


class LecternError(Exception):
    """Base class for all lectern errors."""


class ValidationError(LecternError):
    """A request was rejected before any streaming started."""


class ProviderError(LecternError):
    """An embedding, retrieval, model or cache provider call failed."""

    def __init__(self, message: str, *, provider: str = "unknown") -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message


class ModelMismatchError(LecternError):
    """A context cache is bound to a different model than the one requested."""

    def __init__(self, requested_model: str, cached_model: str) -> None:
        self.requested_model = requested_model
        self.cached_model = cached_model
        super().__init__(
            "Model mismatch: the context cache for this document was created for "
            f"{cached_model}, but {requested_model} was requested. "
            f"Switch to {cached_model} or request a fresh cache."
        )


class TransportDeadError(LecternError):
    """The downstream client connection is gone."""
