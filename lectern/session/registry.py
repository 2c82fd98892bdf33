"""Connection registry owned by the transport layer."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from lectern.documents import DocumentRef
from lectern.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConnectionState:
    """Per-connection state: the selected document and the turn in flight."""

    connection_id: str
    conversation_id: str | None = None
    document: DocumentRef | None = None
    task: asyncio.Task[Any] | None = None
    turn_id: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def busy(self) -> bool:
        return self.task is not None and not self.task.done()


class SessionRegistry:
    """
    Map connection ids to :class:`ConnectionState`.

    A transport creates one registry and passes it to the orchestrator; there
    is no process-wide session map.
    """

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionState] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def open(self, connection_id: str, **kwargs: Any) -> ConnectionState:
        state = self._connections.get(connection_id)
        if state is None:
            state = ConnectionState(connection_id=connection_id, **kwargs)
            self._connections[connection_id] = state
            logger.debug("connection_opened", connection_id=connection_id)
        return state

    def get(self, connection_id: str) -> ConnectionState | None:
        return self._connections.get(connection_id)

    async def close(self, connection_id: str) -> ConnectionState | None:
        """Forget a connection and cancel its in-flight turn."""
        state = self._connections.pop(connection_id, None)
        if state is None:
            return None
        if state.busy:
            assert state.task is not None
            state.task.cancel()
            try:
                await state.task
            except asyncio.CancelledError:
                logger.debug("connection_turn_cancelled", connection_id=connection_id, turn_id=state.turn_id)
        logger.debug("connection_closed", connection_id=connection_id)
        return state

    async def close_all(self) -> None:
        for connection_id in list(self._connections):
            await self.close(connection_id)
