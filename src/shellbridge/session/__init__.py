"""Session layer: session contract, registry, exec protocol and event wire.

``SessionService`` lives in ``shellbridge.session.service``; it pulls in
the remote adapter and is imported from there directly.
"""

from shellbridge.session.base import Emitter, Session, SessionKind, Subscription
from shellbridge.session.exec import (
    TIMEOUT_EXIT_CODE,
    PendingExec,
    SentinelExecutor,
    TerminalExecResult,
    make_sentinel,
)
from shellbridge.session.registry import Registry, SessionEntry
from shellbridge.session.wire import EventType, Wire, WireEvent

__all__ = [
    "TIMEOUT_EXIT_CODE",
    "Emitter",
    "EventType",
    "PendingExec",
    "Registry",
    "SentinelExecutor",
    "Session",
    "SessionEntry",
    "SessionKind",
    "Subscription",
    "TerminalExecResult",
    "Wire",
    "WireEvent",
    "make_sentinel",
]
