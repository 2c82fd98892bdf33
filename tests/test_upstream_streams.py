import asyncio

import pytest

from conftest import HOLD, ScriptedProvider, done, text, thought
from lectern.providers.base import LLMProvider, StreamOptions
from lectern.providers.streams import UpstreamStreams


@pytest.mark.asyncio
async def test_events_are_relayed_in_order_and_request_is_released() -> None:
    provider = ScriptedProvider([[thought("hmm"), text("a"), text("b"), done("ab")]])
    streams = UpstreamStreams(provider)

    request_id = streams.open([{"role": "user", "content": "hi"}], options=StreamOptions(enable_search=True))
    events = [event async for event in streams.events(request_id)]

    assert request_id.startswith("req_")
    assert [e["type"] for e in events] == ["thinking_delta", "text_delta", "text_delta", "done"]
    assert streams.active_count == 0
    assert provider.calls[0]["model"] == "gemini/gemini-2.5-flash"
    assert provider.calls[0]["options"].enable_search is True


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_stops_the_upstream_call() -> None:
    provider = ScriptedProvider([[text("a"), HOLD, text("never"), done("a never")]])
    streams = UpstreamStreams(provider)
    request_id = streams.open([{"role": "user", "content": "hi"}])

    iterator = streams.events(request_id)
    first = await iterator.__anext__()
    assert first == text("a")

    assert streams.cancel(request_id) is True
    assert streams.cancel(request_id) is False

    await asyncio.wait_for(provider.cancelled.wait(), timeout=1)
    assert provider.cancel_count == 1
    remaining = [event async for event in iterator]
    assert remaining == []


@pytest.mark.asyncio
async def test_cancel_unknown_request_returns_false() -> None:
    streams = UpstreamStreams(ScriptedProvider())
    assert streams.cancel("req_missing") is False


@pytest.mark.asyncio
async def test_collect_returns_final_response() -> None:
    provider = ScriptedProvider([[text("sum"), text("mary"), done("summary", model="gemini-2.5-flash")]])
    streams = UpstreamStreams(provider)

    response = await streams.collect([{"role": "user", "content": "summarize"}], model="gemini/gemini-2.5-flash")

    assert response.content == "summary"
    assert not response.is_error


@pytest.mark.asyncio
async def test_provider_crash_becomes_error_done_event() -> None:
    class _Crashing(LLMProvider):
        async def stream_chat(self, messages, model=None, options=None):
            yield text("partial")
            raise RuntimeError("socket closed")

        def get_default_model(self) -> str:
            return "gemini/gemini-2.5-flash"

    streams = UpstreamStreams(_Crashing())
    request_id = streams.open([{"role": "user", "content": "hi"}])
    events = [event async for event in streams.events(request_id)]

    assert [e["type"] for e in events] == ["text_delta", "done"]
    assert events[-1]["response"].is_error
    assert "socket closed" in events[-1]["response"].content
