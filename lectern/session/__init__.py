"""Streaming turns: context assembly, events, sinks and the session state machine."""

from lectern.session.assembler import AssembledContext, ContextAssembler
from lectern.session.events import StreamEvent
from lectern.session.options import TurnOptions
from lectern.session.registry import ConnectionState, SessionRegistry
from lectern.session.stream import SessionState, StreamSession, Turn
from lectern.session.transport import DownstreamSink, QueueSink, encode_sse

__all__ = [
    "AssembledContext",
    "ConnectionState",
    "ContextAssembler",
    "DownstreamSink",
    "QueueSink",
    "SessionRegistry",
    "SessionState",
    "StreamEvent",
    "StreamSession",
    "Turn",
    "TurnOptions",
    "encode_sse",
]
