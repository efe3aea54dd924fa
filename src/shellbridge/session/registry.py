"""Session registry: owns every piece of per-session state.

One ``Registry`` is built per process and handed to the exec protocol and
the transport hosts. It maps session ids to live sessions together with
their history, owning caller, output sink, busy flag and display buffer.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from shellbridge.config import ShellBridgeConfig
from shellbridge.errors import SessionNotFoundError
from shellbridge.pty.buffer import HistoryBuffer
from shellbridge.pty.cwd import CwdResolver, strategy_for
from shellbridge.pty.display import DisplayBuffer
from shellbridge.pty.helpers import HelperProcesses
from shellbridge.session.base import Session, SessionKind, Subscription

if TYPE_CHECKING:
    from shellbridge.session.exec import PendingExec
    from shellbridge.session.wire import Wire

logger = logging.getLogger(__name__)

LocalFactory = Callable[..., Session]


def _default_local_factory(session_id: str, **kwargs: Any) -> Session:
    from shellbridge.pty.session import LocalSession

    return LocalSession(session_id, **kwargs)


@dataclass
class SessionEntry:
    """Registry state for one session id."""

    session: Session
    history: HistoryBuffer
    sink: Wire | None = None
    owner_id: str | None = None
    busy: bool = False
    exec_active: bool = False
    display: DisplayBuffer | None = None
    pending: PendingExec | None = None
    subscriptions: list[Subscription] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def is_remote(self) -> bool:
        return self.session.kind is SessionKind.REMOTE


class Registry:
    """Exclusive owner of session-scoped state.

    Every session's output is appended to its history first, then either
    forwarded to its sink or, while an exec is capturing, handed to the
    session's display buffer. Process exit and explicit close both tear
    down all state for the id synchronously.
    """

    def __init__(
        self,
        config: ShellBridgeConfig | None = None,
        helpers: HelperProcesses | None = None,
        cwd_resolver: CwdResolver | None = None,
        local_factory: LocalFactory | None = None,
    ) -> None:
        self.config = config if config is not None else ShellBridgeConfig()
        self.helpers = helpers if helpers is not None else HelperProcesses()
        self.cwd_resolver = (
            cwd_resolver
            if cwd_resolver is not None
            else CwdResolver(
                strategy_for(self.helpers, timeout=self.config.terminal.helper_timeout),
                ttl=self.config.terminal.cwd_cache_ttl,
            )
        )
        self._local_factory = local_factory or _default_local_factory
        self._entries: dict[str, SessionEntry] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        cols: int | None = None,
        rows: int | None = None,
        cwd: str | None = None,
        reconnect_id: str | None = None,
        sink: Wire | None = None,
        owner_id: str | None = None,
    ) -> str:
        """Spawn a local shell, or re-attach ``reconnect_id`` if still live."""
        term = self.config.terminal
        cols = cols or term.cols
        rows = rows or term.rows

        if reconnect_id:
            existing = self.reconnect(reconnect_id, sink, owner_id, cols, rows)
            if existing is not None:
                return existing

        self._enforce_limit()

        session_id = uuid.uuid4().hex[:8]
        session = self._local_factory(
            session_id, cwd=cwd, cols=cols, rows=rows, term=term.term
        )
        await session.start()  # type: ignore[attr-defined]
        self.register(session, sink=sink, owner_id=owner_id)
        return session_id

    def reconnect(
        self,
        session_id: str,
        sink: Wire | None = None,
        owner_id: str | None = None,
        cols: int | None = None,
        rows: int | None = None,
    ) -> str | None:
        """Re-bind a live session to a new caller without restarting it."""
        entry = self._entries.get(session_id)
        if entry is None or not entry.session.alive:
            return None
        if sink is not None:
            entry.sink = sink
        if owner_id is not None:
            entry.owner_id = owner_id
        if cols and rows:
            entry.session.resize(cols, rows)
        logger.info("Session %s re-attached (owner=%s)", session_id, entry.owner_id)
        return session_id

    def register(
        self,
        session: Session,
        sink: Wire | None = None,
        owner_id: str | None = None,
    ) -> SessionEntry:
        """Start tracking an already-started session."""
        if session.id in self._entries:
            raise ValueError(f"Session id already registered: {session.id}")
        hist = self.config.history
        entry = SessionEntry(
            session=session,
            history=HistoryBuffer(hist.max_chars, hist.keep_chars),
            sink=sink,
            owner_id=owner_id,
        )
        entry.subscriptions.append(
            session.output.subscribe(lambda data: self._on_output(entry, data))
        )
        entry.subscriptions.append(
            session.exits.subscribe(lambda code: self._on_exit(entry, code))
        )
        self._entries[session.id] = entry
        return entry

    def _enforce_limit(self) -> None:
        local = [e for e in self._entries.values() if not e.is_remote]
        if len(local) < self.config.terminal.max_sessions:
            return
        oldest = min(local, key=lambda e: e.created_at)
        logger.warning("Max sessions reached, killing oldest: %s", oldest.id)
        self.close(oldest.id)

    def close(self, session_id: str) -> bool:
        """Kill a session and drop all of its state. Unknown ids are a no-op."""
        entry = self._entries.get(session_id)
        if entry is None:
            logger.debug("close: no session %s", session_id)
            return False
        try:
            entry.session.kill()
        except Exception:
            logger.exception("Error killing session %s", session_id)
        # Remote kills may report their exit later from another thread
        if self._entries.get(session_id) is entry:
            self._teardown(entry)
            self._notify_exit(entry, None)
        return True

    def _on_output(self, entry: SessionEntry, data: str) -> None:
        entry.history.append(data)
        if entry.display is not None:
            entry.display.push(data)
        else:
            self._forward(entry, data)

    def _forward(self, entry: SessionEntry, text: str) -> None:
        if entry.sink is not None:
            entry.sink.send_data(entry.id, text)

    def _on_exit(self, entry: SessionEntry, exit_code: int | None) -> None:
        if self._entries.get(entry.id) is not entry:
            return
        self._teardown(entry)
        self._notify_exit(entry, exit_code)

    def _notify_exit(self, entry: SessionEntry, exit_code: int | None) -> None:
        logger.info("Session %s ended (code=%s)", entry.id, exit_code)
        if entry.sink is None:
            return
        entry.sink.send_exit(entry.id, exit_code)
        if entry.is_remote:
            entry.sink.send_remote_status(entry.id, "disconnected")

    def _teardown(self, entry: SessionEntry) -> None:
        self._entries.pop(entry.id, None)
        for sub in entry.subscriptions:
            sub.dispose()
        entry.subscriptions.clear()
        if entry.display is not None:
            entry.display.discard(flush=True)
            entry.display = None
        entry.exec_active = False
        entry.busy = False
        if not entry.is_remote:
            self.cwd_resolver.forget(entry.session.pid)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def write(self, session_id: str, data: str) -> None:
        entry = self._entries.get(session_id)
        if entry is None:
            logger.debug("write: no session %s", session_id)
            return
        entry.session.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        entry = self._entries.get(session_id)
        if entry is None:
            logger.debug("resize: no session %s", session_id)
            return
        entry.session.resize(cols, rows)

    def exists(self, session_id: str) -> bool:
        return session_id in self._entries

    def get(self, session_id: str) -> SessionEntry | None:
        return self._entries.get(session_id)

    def entry(self, session_id: str) -> SessionEntry:
        """Like ``get`` but raises ``SessionNotFoundError``."""
        entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def ids(self) -> list[str]:
        return list(self._entries)

    # ------------------------------------------------------------------
    # Capture (display buffering while an exec is in flight)
    # ------------------------------------------------------------------

    def begin_capture(self, session_id: str) -> None:
        entry = self.entry(session_id)
        entry.exec_active = True
        if entry.display is not None:
            entry.display.reopen()
            return
        disp = self.config.display
        entry.display = DisplayBuffer(
            lambda text: self._forward(entry, text),
            debounce=disp.debounce,
            flush_grace=disp.flush_grace,
            sentinel_prefix=self.config.exec.sentinel_prefix,
        )

    def end_capture(self, session_id: str) -> None:
        entry = self._entries.get(session_id)
        if entry is None or entry.display is None:
            return
        entry.exec_active = False
        display = entry.display

        def _closed() -> None:
            if entry.display is display:
                entry.display = None

        display.close(on_closed=_closed)

    # ------------------------------------------------------------------
    # Ownership (multi-client hosting)
    # ------------------------------------------------------------------

    def owned_by(self, owner_id: str) -> list[str]:
        return [e.id for e in self._entries.values() if e.owner_id == owner_id]

    def rebind_owner(self, owner_id: str, sink: Wire) -> list[str]:
        """Point every session of ``owner_id`` at a new sink."""
        ids = self.owned_by(owner_id)
        for session_id in ids:
            self._entries[session_id].sink = sink
        if ids:
            logger.info("Re-pointed %d session(s) of client %s", len(ids), owner_id)
        return ids

    def close_owned_by(self, owner_id: str) -> list[str]:
        ids = self.owned_by(owner_id)
        for session_id in ids:
            self.close(session_id)
        return ids

    async def shutdown(self) -> None:
        """Close every session and kill outstanding helpers."""
        for session_id in list(self._entries):
            self.close(session_id)
        self.helpers.kill_all()
        # Let cancelled readers and timers settle
        await asyncio.sleep(0)
        logger.info("All sessions cleaned up")

    def __len__(self) -> int:
        return len(self._entries)
