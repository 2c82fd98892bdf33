"""Rolling conversation memory with background compaction."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from lectern.config.schema import MemoryConfig, PromptTemplates
from lectern.logging import get_logger
from lectern.memory.jobs import CompactionJobs
from lectern.memory.store import ConversationStore, Summary
from lectern.providers.base import StreamOptions
from lectern.providers.streams import UpstreamStreams

logger = get_logger(__name__)


@dataclass
class MemoryContext:
    """What a turn reads from memory: the summary plus the retained tail."""

    summary: Summary | None = None
    recent_messages: list[dict[str, str]] = field(default_factory=list)
    total_rounds: int = 0
    turn_count: int = 0

    @property
    def rounds_summarized(self) -> int:
        return self.summary.rounds_summarized if self.summary else 0


class ConversationMemory:
    """
    Own the history and summary of every conversation.

    History grows by ``append``; once it reaches the summarize threshold,
    ``maybe_compact`` folds the older part into a model-written summary in a
    background task and trims history to the most recent tail. Messages
    appended while a compaction is running are never dropped by it.
    """

    def __init__(
        self,
        store: ConversationStore,
        streams: UpstreamStreams,
        *,
        config: MemoryConfig | None = None,
        prompts: PromptTemplates | None = None,
        model: str | None = None,
    ) -> None:
        self.store = store
        self.streams = streams
        self.config = config or MemoryConfig()
        self.prompts = prompts or PromptTemplates()
        self.model = model
        self.jobs = CompactionJobs()

    async def get_context(self, conversation_id: str) -> MemoryContext:
        history = await self.store.get_history(conversation_id)
        summary = await self.store.get_summary(conversation_id)
        recent = [{"role": m["role"], "content": m.get("content", "")} for m in history]
        rounds = (summary.rounds_summarized if summary else 0) + len(recent) // 2
        turns = await self.store.get_turn_count(conversation_id)
        return MemoryContext(summary=summary, recent_messages=recent, total_rounds=rounds, turn_count=turns)

    async def append(self, conversation_id: str, message: dict[str, Any]) -> int:
        entry = {
            "role": message["role"],
            "content": message.get("content", ""),
            "timestamp": message.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        }
        return await self.store.append_history(conversation_id, entry)

    async def is_due(self, conversation_id: str) -> bool:
        history = await self.store.get_history(conversation_id)
        return len(history) >= self.config.summarize_threshold_messages

    async def maybe_compact(self, conversation_id: str) -> asyncio.Task[bool] | None:
        """Start a background compaction when due; never waits for it."""
        if self.jobs.is_running(conversation_id):
            return None
        try:
            due = await self.is_due(conversation_id)
        except Exception:
            logger.exception("compaction_check_failed", conversation_id=conversation_id)
            return None
        if not due:
            return None
        logger.info("compaction_scheduled", conversation_id=conversation_id)
        return self.jobs.schedule(conversation_id, lambda: self._compact(conversation_id))

    async def compact(self, conversation_id: str) -> bool:
        """Compact now, waiting for the result."""
        return await self.jobs.run_now(conversation_id, lambda: self._compact(conversation_id))

    def build_compaction_prompt(self, summary: Summary | None, messages: list[dict[str, Any]]) -> str:
        p = self.prompts
        parts: list[str] = []
        if summary and summary.text:
            parts.append(f"{p.previous_summary_label}\n{summary.text}\n\n{p.new_conversation_label}\n")
        for m in messages:
            role = p.role_names.get(m.get("role", ""), m.get("role", ""))
            parts.append(f"{role}: {m.get('content', '')}\n\n")
        parts.append(p.summarize_instruction)
        return "".join(parts)

    async def _compact(self, conversation_id: str) -> bool:
        keep = self.config.keep_recent_messages
        try:
            snapshot = await self.store.get_history(conversation_id)
            snapshot_len = len(snapshot)
            if snapshot_len <= keep:
                return False
            previous = await self.store.get_summary(conversation_id)

            prompt = self.build_compaction_prompt(previous, snapshot)
            response = await self.streams.collect(
                [{"role": "user", "content": prompt}],
                model=self.model,
                options=StreamOptions(enable_search=False, enable_tools=False, include_thoughts=False),
            )
            text = (response.content or "").strip()
            if response.is_error or not text:
                logger.warning(
                    "compaction_failed",
                    conversation_id=conversation_id,
                    reason=response.content if response.is_error else "empty summary",
                )
                return False

            drop_count = snapshot_len - keep
            rounds = (previous.rounds_summarized if previous else 0) + max(0, drop_count // 2)
            summary = Summary(text=text, rounds_summarized=rounds)
            if previous is not None:
                summary.created_at = previous.created_at
            await self.store.set_summary_and_trim(conversation_id, summary, drop_count)
            logger.info(
                "compaction_done",
                conversation_id=conversation_id,
                snapshot_len=snapshot_len,
                dropped=drop_count,
                rounds_summarized=rounds,
            )
            return True
        except Exception:
            logger.exception("compaction_failed", conversation_id=conversation_id)
            return False

    async def clear(self, conversation_id: str) -> None:
        await self.jobs.cancel(conversation_id)
        await self.store.clear(conversation_id)
        logger.info("conversation_cleared", conversation_id=conversation_id)
