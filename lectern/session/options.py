"""Per-turn options passed explicitly into every turn."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

Engine: TypeAlias = Literal["google", "mcp", "off"]

ENGINES: tuple[str, ...] = ("google", "mcp", "off")


@dataclass
class TurnOptions:
    """
    Switches for one turn.

    ``engine`` picks the live augmentation: ``google`` grounds answers with
    web search (only when ``search`` is on), ``mcp`` forwards ``tools`` to
    the model, ``off`` uses pretrained knowledge only. ``summary`` and
    ``history`` let a stateless client supply its own memory; when either is
    set, server-side memory is neither read nor written.
    """

    model: str | None = None
    engine: Engine = "google"
    search: bool = True
    rag: bool = False
    keyword_weight: float | None = None
    use_cache: bool = False
    cache_ttl: int | None = None
    tools: list[dict[str, Any]] | None = None
    summary: str | None = None
    history: list[dict[str, Any]] | None = None

    @property
    def enable_search(self) -> bool:
        return self.search and self.engine == "google"

    @property
    def enable_tools(self) -> bool:
        return self.engine == "mcp"

    @property
    def effective_engine(self) -> Engine:
        """The engine actually in effect, used for the provenance label."""
        if self.enable_search:
            return "google"
        if self.enable_tools:
            return "mcp"
        return "off"

    @property
    def client_memory(self) -> bool:
        return self.summary is not None or self.history is not None
