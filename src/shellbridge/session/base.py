"""Session contract and per-session output streams."""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import Callable, Generic, TypeVar

from shellbridge.pty.shell import POSIX_DIALECT, ShellDialect

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionKind(enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Subscription:
    """Handle returned by ``Emitter.subscribe``; ``dispose()`` is idempotent."""

    def __init__(self, emitter: Emitter, callback: Callable) -> None:
        self._emitter: Emitter | None = emitter
        self._callback = callback

    def dispose(self) -> None:
        if self._emitter is not None:
            self._emitter._remove(self._callback)
            self._emitter = None

    @property
    def active(self) -> bool:
        return self._emitter is not None


class Emitter(Generic[T]):
    """Synchronous multi-listener stream.

    Listeners run in subscription order. A listener that raises is logged
    and the remaining listeners still receive the value.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self, callback)

    def emit(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Error in %s listener", self.name or "stream")

    def _remove(self, callback: Callable) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)


class Session(ABC):
    """A live shell process behind a uniform contract.

    ``output`` carries decoded text chunks in the order the process wrote
    them; ``exits`` fires once with the exit code (or None) when the
    process ends on its own or is killed. ``kill()`` is idempotent.
    """

    kind: SessionKind
    dialect: ShellDialect = POSIX_DIALECT

    def __init__(self, session_id: str) -> None:
        self.id = session_id
        self.output: Emitter[str] = Emitter(f"session {session_id} output")
        self.exits: Emitter[int | None] = Emitter(f"session {session_id} exit")
        self._exit_fired = False

    @property
    @abstractmethod
    def pid(self) -> int: ...

    @property
    @abstractmethod
    def alive(self) -> bool: ...

    @abstractmethod
    def write(self, data: str) -> None: ...

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None: ...

    @abstractmethod
    def kill(self) -> None: ...

    def _fire_exit(self, exit_code: int | None) -> None:
        if self._exit_fired:
            return
        self._exit_fired = True
        self.exits.emit(exit_code)
