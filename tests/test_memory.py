import asyncio

import pytest
import redis.asyncio as redis

from conftest import HOLD, ScriptedProvider, done, failed
from lectern.config.schema import MemoryConfig
from lectern.errors import ProviderError
from lectern.memory.conversation import ConversationMemory
from lectern.memory.store import InMemoryConversationStore, RedisConversationStore, Summary
from lectern.providers.streams import UpstreamStreams


def _memory(provider: ScriptedProvider, store=None, **config) -> ConversationMemory:
    return ConversationMemory(
        store or InMemoryConversationStore(),
        UpstreamStreams(provider),
        config=MemoryConfig(**config),
        model="gemini/gemini-2.5-flash",
    )


async def _fill(memory: ConversationMemory, conversation_id: str, rounds: int) -> None:
    for i in range(rounds):
        await memory.append(conversation_id, {"role": "user", "content": f"question {i}"})
        await memory.append(conversation_id, {"role": "assistant", "content": f"answer {i}"})


async def _wait_for_call(provider: ScriptedProvider) -> None:
    while not provider.calls:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_in_memory_store_caps_history_and_counts_turns() -> None:
    store = InMemoryConversationStore(max_messages=4)
    for i in range(3):
        await store.append_history("c1", {"role": "user", "content": f"q{i}"})
        size = await store.append_history("c1", {"role": "assistant", "content": f"a{i}"})

    history = await store.get_history("c1")
    assert size == 4
    assert [m["content"] for m in history] == ["q1", "a1", "q2", "a2"]
    assert await store.get_turn_count("c1") == 3
    assert await store.get_history("other") == []


@pytest.mark.asyncio
async def test_set_summary_and_trim_drops_oldest() -> None:
    store = InMemoryConversationStore()
    for i in range(6):
        await store.append_history("c1", {"role": "user", "content": str(i)})

    await store.set_summary_and_trim("c1", Summary(text="digest", rounds_summarized=2), drop_count=4)

    assert [m["content"] for m in await store.get_history("c1")] == ["4", "5"]
    assert (await store.get_summary("c1")).text == "digest"

    await store.clear("c1")
    assert await store.get_history("c1") == []
    assert await store.get_summary("c1") is None


@pytest.mark.asyncio
async def test_append_adds_timestamp() -> None:
    memory = _memory(ScriptedProvider())
    await memory.append("c1", {"role": "user", "content": "hi"})

    [message] = await memory.store.get_history("c1")
    assert message["role"] == "user"
    assert message["timestamp"]


@pytest.mark.asyncio
async def test_compaction_summarizes_and_keeps_recent_tail() -> None:
    provider = ScriptedProvider([[done("The reader asked about chapters.")]])
    memory = _memory(provider)
    await _fill(memory, "c1", rounds=8)

    task = await memory.maybe_compact("c1")
    assert task is not None
    await task

    history = await memory.store.get_history("c1")
    summary = await memory.store.get_summary("c1")
    assert [m["content"] for m in history] == [
        "question 4", "answer 4", "question 5", "answer 5",
        "question 6", "answer 6", "question 7", "answer 7",
    ]
    assert summary.text == "The reader asked about chapters."
    assert summary.rounds_summarized == 4

    [call] = provider.calls
    prompt = call["messages"][0]["content"]
    assert "User: question 0" in prompt
    assert "AI: answer 7" in prompt
    assert "[Previous summary]" not in prompt
    assert call["options"].enable_search is False
    assert call["options"].enable_tools is False

    context = await memory.get_context("c1")
    assert context.rounds_summarized == 4
    assert context.total_rounds == 8
    assert context.turn_count == 8
    assert len(context.recent_messages) == 8


@pytest.mark.asyncio
async def test_compaction_not_due_returns_none() -> None:
    provider = ScriptedProvider()
    memory = _memory(provider)
    await _fill(memory, "c1", rounds=7)

    assert await memory.maybe_compact("c1") is None
    assert provider.calls == []


@pytest.mark.asyncio
async def test_messages_appended_during_compaction_are_kept() -> None:
    provider = ScriptedProvider([[HOLD, done("summary")]])
    memory = _memory(provider)
    await _fill(memory, "c1", rounds=8)

    task = await memory.maybe_compact("c1")
    await _wait_for_call(provider)
    assert await memory.maybe_compact("c1") is None

    await memory.append("c1", {"role": "user", "content": "late question"})
    await memory.append("c1", {"role": "assistant", "content": "late answer"})
    provider.release()
    await task

    contents = [m["content"] for m in await memory.store.get_history("c1")]
    assert len(contents) == 10
    assert contents[0] == "question 4"
    assert contents[-2:] == ["late question", "late answer"]


@pytest.mark.asyncio
async def test_failed_compaction_leaves_state_untouched() -> None:
    provider = ScriptedProvider([[failed("Error calling LLM: quota")]])
    memory = _memory(provider)
    await _fill(memory, "c1", rounds=8)

    assert await memory.compact("c1") is False
    assert len(await memory.store.get_history("c1")) == 16
    assert await memory.store.get_summary("c1") is None


@pytest.mark.asyncio
async def test_second_compaction_folds_previous_summary() -> None:
    provider = ScriptedProvider([[done("first digest")], [done("second digest")]])
    memory = _memory(provider)
    await _fill(memory, "c1", rounds=8)
    assert await memory.compact("c1") is True

    await _fill(memory, "c1", rounds=4)
    assert await memory.compact("c1") is True

    second_prompt = provider.calls[1]["messages"][0]["content"]
    assert second_prompt.startswith("[Previous summary]\nfirst digest\n\n[New conversation]\n")
    summary = await memory.store.get_summary("c1")
    assert summary.text == "second digest"
    assert summary.rounds_summarized == 8
    assert len(await memory.store.get_history("c1")) == 8


@pytest.mark.asyncio
async def test_clear_cancels_running_compaction() -> None:
    provider = ScriptedProvider([[HOLD, done("summary")]])
    memory = _memory(provider)
    await _fill(memory, "c1", rounds=8)

    task = await memory.maybe_compact("c1")
    await _wait_for_call(provider)
    await memory.clear("c1")

    assert task.done()
    assert await memory.store.get_history("c1") == []
    assert not memory.jobs.is_running("c1")


class _FakePipeline:
    def __init__(self, client: "_FakeRedis"):
        self._client = client
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = [await getattr(self._client, name)(*args, **kwargs) for name, args, kwargs in self._ops]
        self._ops = []
        return results


class _FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def rpush(self, key, value):
        self.data.setdefault(key, []).append(value)
        return len(self.data[key])

    async def ltrim(self, key, start, end):
        items = self.data.get(key, [])
        stop = None if end == -1 else end + 1
        self.data[key] = items[start:stop]
        return True

    async def lrange(self, key, start, end):
        return list(self.data.get(key, []))

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_redis_store_round_trips_history_summary_and_turns() -> None:
    client = _FakeRedis()
    store = RedisConversationStore(client, key_prefix="t:", max_messages=4, ttl_seconds=60)

    for i in range(3):
        await store.append_history("c1", {"role": "user", "content": f"q{i}"})
        await store.append_history("c1", {"role": "assistant", "content": f"a{i}"})

    assert [m["content"] for m in await store.get_history("c1")] == ["q1", "a1", "q2", "a2"]
    assert await store.get_turn_count("c1") == 3
    assert client.ttls["t:history:c1"] == 60

    await store.set_summary_and_trim("c1", Summary(text="digest", rounds_summarized=1), drop_count=2)
    assert [m["content"] for m in await store.get_history("c1")] == ["q2", "a2"]
    summary = await store.get_summary("c1")
    assert summary.text == "digest"
    assert summary.rounds_summarized == 1

    await store.clear("c1")
    assert await store.get_history("c1") == []
    assert await store.get_summary("c1") is None
    assert await store.get_turn_count("c1") == 0


@pytest.mark.asyncio
async def test_redis_errors_become_provider_errors() -> None:
    class _Broken(_FakeRedis):
        async def get(self, key):
            raise redis.ConnectionError("connection refused")

    store = RedisConversationStore(_Broken())
    with pytest.raises(ProviderError) as exc:
        await store.get_summary("c1")
    assert exc.value.provider == "redis"
