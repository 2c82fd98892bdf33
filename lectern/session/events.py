"""Typed client-facing stream events."""

from __future__ import annotations

from typing import Any, Literal, TypeAlias, TypedDict


StreamEventType: TypeAlias = Literal[
    "sources",
    "summary_used",
    "thinking",
    "content",
    "usage",
    "error",
    "done",
]


class SourceItem(TypedDict):
    text: str
    score: float


class SourcesEvent(TypedDict):
    type: Literal["sources"]
    data: list[SourceItem]


class SummaryUsedEvent(TypedDict):
    type: Literal["summary_used"]
    data: dict[str, Any]


class ThinkingEvent(TypedDict):
    type: Literal["thinking"]
    data: str


class ContentEvent(TypedDict):
    type: Literal["content"]
    data: str


class UsageEvent(TypedDict):
    type: Literal["usage"]
    data: dict[str, Any]


class ErrorEvent(TypedDict):
    type: Literal["error"]
    data: str


class DoneEvent(TypedDict):
    type: Literal["done"]
    data: str


StreamEvent: TypeAlias = (
    SourcesEvent
    | SummaryUsedEvent
    | ThinkingEvent
    | ContentEvent
    | UsageEvent
    | ErrorEvent
    | DoneEvent
)


def sources_event(sources: list[SourceItem]) -> SourcesEvent:
    return {"type": "sources", "data": [dict(s) for s in sources]}  # type: ignore[misc]


def summary_used_event(payload: dict[str, Any]) -> SummaryUsedEvent:
    return {"type": "summary_used", "data": dict(payload)}


def thinking_event(text: str) -> ThinkingEvent:
    return {"type": "thinking", "data": text}


def content_event(text: str) -> ContentEvent:
    return {"type": "content", "data": text}


def usage_event(payload: dict[str, Any]) -> UsageEvent:
    return {"type": "usage", "data": dict(payload)}


def error_event(message: str) -> ErrorEvent:
    return {"type": "error", "data": message}


def done_event() -> DoneEvent:
    return {"type": "done", "data": ""}
