"""Wire protocol: decouples session output from the transport hosts.

Session output, exit and remote-status events flow from the registry onto
a Wire. A host subscribes and forwards each event to its caller. Every
connected caller gets its own Wire, so re-pointing a session at another
caller means swapping which Wire it sends to.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    DATA = "data"
    EXIT = "exit"
    REMOTE_STATUS = "remote.statusChange"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        """JSON-ready event frame for a transport host."""
        return {
            "type": "event",
            "event": self.type.value,
            "session_id": self.session_id,
            "payload": self.data,
        }


class Wire:
    """Async message bus: registry -> host subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_data(self, session_id: str, data: str) -> None:
        self.send(WireEvent(type=EventType.DATA, session_id=session_id, data={"data": data}))

    def send_exit(self, session_id: str, exit_code: int | None) -> None:
        self.send(
            WireEvent(
                type=EventType.EXIT,
                session_id=session_id,
                data={"exit_code": exit_code},
            )
        )

    def send_remote_status(self, session_id: str, status: str) -> None:
        """Notify subscribers that a remote session connected or disconnected."""
        self.send(
            WireEvent(
                type=EventType.REMOTE_STATUS,
                session_id=session_id,
                data={"status": status},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed
