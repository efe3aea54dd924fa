"""Sentinel exec protocol: run a command in a visible terminal and capture it.

The command is typed into the live shell followed by a wrapper that prints
a one-time sentinel and the exit status. The session's output stream is
watched until ``<sentinel><code>`` shows up, output goes quiet (stall), or
the hard timeout fires. Stalls and hard timeouts resolve with exit code
124 and leave the session ``busy``; the next call interrupts it first.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Any

from shellbridge.config import ExecConfig
from shellbridge.errors import SessionBusyError
from shellbridge.output import clean_captured, completion_pattern
from shellbridge.session.base import Subscription
from shellbridge.session.registry import Registry, SessionEntry

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_NONCE_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class TerminalExecResult:
    """Outcome of one in-terminal exec."""

    stdout: str
    exit_code: int
    error: str | None = None
    stalled: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"stdout": self.stdout, "exitCode": self.exit_code}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class PendingExec:
    """State of the single in-flight exec on a session."""

    sentinel: str
    future: asyncio.Future[TerminalExecResult]
    output: str = ""
    deadline_hard: float = 0.0
    stall_timer: asyncio.TimerHandle | None = None
    hard_timer: asyncio.TimerHandle | None = None
    subscriptions: list[Subscription] = field(default_factory=list)
    capturing: bool = False

    @property
    def done(self) -> bool:
        return self.future.done()


def make_sentinel(prefix: str, nonce_length: int = 8) -> str:
    nonce = "".join(secrets.choice(_NONCE_ALPHABET) for _ in range(nonce_length))
    return f"{prefix}{nonce}__"


class SentinelExecutor:
    """Runs commands inside registry sessions using the sentinel protocol."""

    def __init__(self, registry: Registry, config: ExecConfig | None = None) -> None:
        self.registry = registry
        self.config = config if config is not None else registry.config.exec

    async def execute(
        self, session_id: str, command: str, preempt: bool = False
    ) -> TerminalExecResult:
        """Inject ``command`` into the session and wait for it to finish.

        Raises ``SessionBusyError`` if an exec is already in flight on the
        session, unless ``preempt`` is set, in which case the outstanding
        call is resolved as stalled and this one takes over.
        """
        entry = self.registry.get(session_id)
        if entry is None:
            return TerminalExecResult("", 1, error="No terminal session found")

        if entry.pending is not None and not entry.pending.done:
            if not preempt:
                raise SessionBusyError(session_id)
            logger.info("Preempting in-flight exec on session %s", session_id)
            self._finish(entry, entry.pending, TIMEOUT_EXIT_CODE, busy=True, stalled=True)

        loop = asyncio.get_running_loop()
        pending = PendingExec(
            sentinel=make_sentinel(self.config.sentinel_prefix, self.config.nonce_length),
            future=loop.create_future(),
        )
        # Claim the session before any await so a concurrent call sees it
        entry.pending = pending
        try:
            return await self._run(entry, pending, command)
        except asyncio.CancelledError:
            # The command may still be running in the shell
            logger.info("exec on session %s cancelled", session_id)
            self._teardown(entry, pending, busy=True)
            raise

    async def _run(
        self, entry: SessionEntry, pending: PendingExec, command: str
    ) -> TerminalExecResult:
        session_id = entry.id
        session = entry.session
        dialect = session.dialect
        loop = asyncio.get_running_loop()

        if entry.busy:
            logger.debug("Session %s busy, interrupting before exec", session_id)
            session.write(dialect.interrupt)
            entry.busy = False
            await asyncio.sleep(self.config.preempt_settle)
            if pending.done:
                return pending.future.result()
            if self.registry.get(session_id) is not entry or not session.alive:
                entry.pending = None
                return TerminalExecResult("", 1, error="Terminal session exited")

        self.registry.begin_capture(session_id)
        pending.capturing = True
        pending.subscriptions.append(
            session.output.subscribe(lambda data: self._on_chunk(entry, pending, data))
        )
        pending.subscriptions.append(
            session.exits.subscribe(lambda code: self._on_session_exit(entry, pending))
        )
        pending.deadline_hard = loop.time() + self.config.hard_timeout
        pending.hard_timer = loop.call_later(
            self.config.hard_timeout, self._on_hard_timeout, entry, pending
        )

        session.write(dialect.line_kill)
        session.write(dialect.wrap(command, pending.sentinel) + dialect.enter)
        logger.debug("exec on %s: %s", session_id, command)

        return await pending.future

    # ------------------------------------------------------------------
    # Stream handlers
    # ------------------------------------------------------------------

    def _on_chunk(self, entry: SessionEntry, pending: PendingExec, data: str) -> None:
        if pending.done:
            return
        # Only the tail can complete a match that was not there before
        start = max(0, len(pending.output) - len(pending.sentinel) - 16)
        pending.output += data
        match = completion_pattern(pending.sentinel).search(pending.output, start)
        if match:
            self._finish(entry, pending, int(match.group(1)))
            return
        if pending.stall_timer is not None:
            pending.stall_timer.cancel()
        loop = asyncio.get_running_loop()
        pending.stall_timer = loop.call_later(
            self.config.stall_timeout, self._on_stall, entry, pending
        )

    def _on_stall(self, entry: SessionEntry, pending: PendingExec) -> None:
        pending.stall_timer = None
        if pending.done or not pending.output:
            return
        self._time_out(entry, pending, "stall")

    def _on_hard_timeout(self, entry: SessionEntry, pending: PendingExec) -> None:
        pending.hard_timer = None
        if pending.done:
            return
        self._time_out(entry, pending, "hard timeout")

    def _time_out(self, entry: SessionEntry, pending: PendingExec, reason: str) -> None:
        # Sentinel and code may be the very last thing received
        match = completion_pattern(pending.sentinel, terminated=False).search(pending.output)
        if match:
            self._finish(entry, pending, int(match.group(1)))
            return
        logger.info("exec on session %s ended by %s", entry.id, reason)
        self._finish(entry, pending, TIMEOUT_EXIT_CODE, busy=True, stalled=True)

    def _on_session_exit(self, entry: SessionEntry, pending: PendingExec) -> None:
        if pending.done:
            return
        self._finish(entry, pending, 1, error="Terminal session exited")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _teardown(self, entry: SessionEntry, pending: PendingExec, busy: bool) -> None:
        """Release timers, listeners and display capture held by ``pending``."""
        for timer in (pending.stall_timer, pending.hard_timer):
            if timer is not None:
                timer.cancel()
        pending.stall_timer = pending.hard_timer = None
        for sub in pending.subscriptions:
            sub.dispose()
        pending.subscriptions.clear()

        if entry.pending is pending:
            entry.pending = None
            entry.busy = busy
        if pending.capturing:
            pending.capturing = False
            self.registry.end_capture(entry.id)

    def _finish(
        self,
        entry: SessionEntry,
        pending: PendingExec,
        exit_code: int,
        busy: bool = False,
        stalled: bool = False,
        error: str | None = None,
    ) -> None:
        if pending.done:
            return
        self._teardown(entry, pending, busy)

        cfg = self.config
        stdout = clean_captured(
            pending.output,
            pending.sentinel,
            cfg.sentinel_prefix,
            cfg.max_output_chars,
            cfg.keep_head_chars,
            cfg.keep_tail_chars,
        )
        pending.future.set_result(
            TerminalExecResult(stdout, exit_code, error=error, stalled=stalled)
        )
