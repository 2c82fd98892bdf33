from types import SimpleNamespace
from unittest.mock import patch

import pytest

from lectern.providers.base import StreamOptions
from lectern.providers.litellm_provider import LiteLLMProvider


class _FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self._index = 0

    def __aiter__(self):
        self._index = 0
        return self

    async def __anext__(self):
        if self._index >= len(self._chunks):
            raise StopAsyncIteration
        chunk = self._chunks[self._index]
        self._index += 1
        return chunk


def _chunk(content=None, reasoning=None, finish_reason=None, usage=None, model=None):
    delta = SimpleNamespace(content=content, reasoning_content=reasoning)
    return SimpleNamespace(
        model=model,
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)],
        usage=usage,
    )


@pytest.mark.asyncio
async def test_stream_chat_separates_thoughts_from_text_and_reports_usage() -> None:
    provider = LiteLLMProvider(api_key="fake-key")

    chunks = [
        _chunk(reasoning="Considering the plot. ", model="gemini-2.5-flash"),
        _chunk(content="Hello "),
        _chunk(
            content="world",
            finish_reason="stop",
            usage=SimpleNamespace(
                prompt_tokens=10,
                completion_tokens=5,
                total_tokens=15,
                prompt_tokens_details=SimpleNamespace(cached_tokens=4),
            ),
        ),
    ]

    async def fake_acompletion(**kwargs):
        return _FakeStream(chunks)

    with patch("lectern.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        events = [event async for event in provider.stream_chat(
            messages=[{"role": "user", "content": "hi"}],
        )]

    assert [e["type"] for e in events] == ["thinking_delta", "text_delta", "text_delta", "done"]
    assert events[0]["delta"] == "Considering the plot. "
    response = events[-1]["response"]
    assert response.content == "Hello world"
    assert response.reasoning_content == "Considering the plot. "
    assert response.finish_reason == "stop"
    assert response.model == "gemini-2.5-flash"
    assert response.usage == {
        "prompt_tokens": 10,
        "completion_tokens": 5,
        "total_tokens": 15,
        "cached_tokens": 4,
    }


@pytest.mark.asyncio
async def test_stream_chat_passes_search_cache_and_thinking_options() -> None:
    provider = LiteLLMProvider(api_key="fake-key", default_model="gemini/gemini-2.5-pro")
    captured_kwargs = {}

    async def fake_acompletion(**kwargs):
        captured_kwargs.update(kwargs)
        return _FakeStream([_chunk(content="ok", finish_reason="stop")])

    options = StreamOptions(enable_search=True, cached_content="cachedContents/abc", include_thoughts=True)
    with patch("lectern.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        events = [event async for event in provider.stream_chat(
            messages=[{"role": "system", "content": ""}, {"role": "user", "content": "hi", "timestamp": "x"}],
            options=options,
        )]

    assert captured_kwargs["model"] == "gemini/gemini-2.5-pro"
    assert captured_kwargs["stream"] is True
    assert captured_kwargs["stream_options"] == {"include_usage": True}
    assert captured_kwargs["tools"] == [{"googleSearch": {}}]
    assert captured_kwargs["cached_content"] == "cachedContents/abc"
    assert captured_kwargs["thinking"]["type"] == "enabled"
    assert captured_kwargs["messages"] == [
        {"role": "system", "content": "(empty)"},
        {"role": "user", "content": "hi"},
    ]
    assert events[-1]["response"].content == "ok"


@pytest.mark.asyncio
async def test_stream_chat_without_search_or_tools_sends_no_tools() -> None:
    provider = LiteLLMProvider(api_key="fake-key")
    captured_kwargs = {}

    async def fake_acompletion(**kwargs):
        captured_kwargs.update(kwargs)
        return _FakeStream([_chunk(content="ok", finish_reason="stop")])

    options = StreamOptions(enable_search=False, enable_tools=False, include_thoughts=False)
    with patch("lectern.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        [event async for event in provider.stream_chat([{"role": "user", "content": "hi"}], options=options)]

    assert "tools" not in captured_kwargs
    assert "thinking" not in captured_kwargs
    assert "cached_content" not in captured_kwargs


@pytest.mark.asyncio
async def test_stream_chat_forwards_tools_only_when_enabled() -> None:
    provider = LiteLLMProvider(api_key="fake-key")
    captured_kwargs = {}
    tool = {"type": "function", "function": {"name": "get_book_info", "parameters": {"type": "object"}}}

    async def fake_acompletion(**kwargs):
        captured_kwargs.update(kwargs)
        return _FakeStream([_chunk(content="ok", finish_reason="stop")])

    options = StreamOptions(enable_tools=True, tools=[tool])
    with patch("lectern.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        [event async for event in provider.stream_chat([{"role": "user", "content": "hi"}], options=options)]

    assert captured_kwargs["tools"] == [tool]


@pytest.mark.asyncio
async def test_stream_chat_reports_failure_as_error_done_with_masked_key() -> None:
    api_key = "fake-key-123456789"
    provider = LiteLLMProvider(api_key=api_key)

    async def fake_acompletion(**kwargs):
        raise RuntimeError(f"401 invalid api key {api_key}")

    with patch("lectern.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        events = [event async for event in provider.stream_chat([{"role": "user", "content": "hi"}])]

    assert [e["type"] for e in events] == ["done"]
    response = events[0]["response"]
    assert response.is_error
    assert api_key not in response.content
    assert "fake****6789" in response.content


@pytest.mark.asyncio
async def test_circuit_breaker_short_circuits_after_threshold() -> None:
    provider = LiteLLMProvider(api_key="fake-key", circuit_breaker_threshold=1, circuit_breaker_cooldown=60)
    calls = 0

    async def fake_acompletion(**kwargs):
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    with patch("lectern.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
        [event async for event in provider.stream_chat([{"role": "user", "content": "hi"}])]
        events = [event async for event in provider.stream_chat([{"role": "user", "content": "hi"}])]

    assert calls == 1
    assert "Circuit breaker open" in events[-1]["response"].content
