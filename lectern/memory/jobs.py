"""Background compaction jobs, one per conversation."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from lectern.logging import get_logger

logger = get_logger(__name__)


class CompactionJobs:
    """
    Track the compaction task of each conversation.

    A conversation has at most one compaction task at a time. ``schedule``
    skips a conversation whose task is still running, ``run_now`` waits for
    it and then runs its own, ``cancel`` stops it (used by ``clear``) and
    ``drain`` waits for every task (used on shutdown). Finished tasks remove
    themselves from the table.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, asyncio.Task[bool]] = {}

    def is_running(self, conversation_id: str) -> bool:
        task = self.tasks.get(conversation_id)
        return task is not None and not task.done()

    def schedule(
        self,
        conversation_id: str,
        work: Callable[[], Awaitable[bool]],
    ) -> asyncio.Task[bool] | None:
        """Start *work* in the background unless a compaction is already running."""
        if self.is_running(conversation_id):
            logger.debug("compaction_skipped", conversation_id=conversation_id, reason="already_running")
            return None
        task: asyncio.Task[bool] = asyncio.create_task(work())
        self.tasks[conversation_id] = task
        task.add_done_callback(lambda t: self._finished(conversation_id, t))
        return task

    def _finished(self, conversation_id: str, task: asyncio.Task[Any]) -> None:
        if self.tasks.get(conversation_id) is task:
            del self.tasks[conversation_id]
        if task.cancelled():
            logger.debug("compaction_cancelled", conversation_id=conversation_id)
        elif task.exception() is not None:
            logger.error("compaction_crashed", conversation_id=conversation_id, error=str(task.exception()))

    async def run_now(self, conversation_id: str, work: Callable[[], Awaitable[bool]]) -> bool:
        """Run *work* once any running compaction of the conversation has finished."""
        while self.is_running(conversation_id):
            await asyncio.wait([self.tasks[conversation_id]])
        task = self.schedule(conversation_id, work)
        assert task is not None
        return await task

    async def cancel(self, conversation_id: str) -> bool:
        """Stop the running compaction; returns False when there was none."""
        task = self.tasks.pop(conversation_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        return True

    async def drain(self) -> None:
        """Wait for every running compaction to finish."""
        pending = [t for t in self.tasks.values() if not t.done()]
        if pending:
            await asyncio.wait(pending)
