import asyncio

import pytest

from lectern.session.events import (
    content_event,
    done_event,
    error_event,
    sources_event,
    summary_used_event,
)
from lectern.session.transport import QueueSink, encode_sse


def test_encode_sse_text_payload_splits_lines() -> None:
    assert encode_sse(content_event("line one\nline two")) == (
        "event: content\ndata: line one\ndata: line two\n\n"
    )


def test_encode_sse_structured_payload_is_json() -> None:
    encoded = encode_sse(sources_event([{"text": "Passage é", "score": 87.3}]))
    assert encoded == 'event: sources\ndata: [{"text": "Passage é", "score": 87.3}]\n\n'

    encoded = encode_sse(summary_used_event({"rounds_summarized": 4, "recent_messages": 4}))
    assert encoded == 'event: summary_used\ndata: {"rounds_summarized": 4, "recent_messages": 4}\n\n'


def test_encode_sse_done_has_empty_data() -> None:
    assert encode_sse(done_event()) == "event: done\ndata: \n\n"


def test_encode_sse_error_event() -> None:
    assert encode_sse(error_event("Error calling LLM: boom")) == "event: error\ndata: Error calling LLM: boom\n\n"


@pytest.mark.asyncio
async def test_queue_sink_delivers_until_closed() -> None:
    sink = QueueSink()

    async def produce() -> None:
        await sink.write(content_event("a"))
        await sink.write(done_event())
        await sink.close()
        await sink.close()

    producer = asyncio.create_task(produce())
    received = [event async for event in sink]
    await producer

    assert [e["type"] for e in received] == ["content", "done"]
    assert not sink.alive
    assert await sink.write(content_event("late")) is False


@pytest.mark.asyncio
async def test_queue_sink_write_fails_after_disconnect() -> None:
    sink = QueueSink()
    assert await sink.write(content_event("a")) is True

    sink.disconnect()

    assert not sink.alive
    assert await sink.write(content_event("b")) is False
