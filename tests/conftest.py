"""Shared fixtures: an in-memory session and fast-timing config."""

from __future__ import annotations

import itertools
import re
from typing import Callable

import pytest

from shellbridge.config import DisplayConfig, ExecConfig, ShellBridgeConfig
from shellbridge.pty.shell import POSIX_DIALECT
from shellbridge.session.base import Session, SessionKind
from shellbridge.session.registry import Registry
from shellbridge.session.wire import Wire

_fake_pids = itertools.count(50_000)

WRAPPED = re.compile(r"^(?P<command>.*); printf '\\n(?P<sentinel>__SHB_DONE_[a-z0-9]+__)%d\\n' \$\?\r$", re.S)


class FakeSession(Session):
    """A scripted shell: records writes, emits whatever the test feeds it."""

    dialect = POSIX_DIALECT

    def __init__(
        self,
        session_id: str,
        kind: SessionKind = SessionKind.LOCAL,
        on_write: Callable[[FakeSession, str], None] | None = None,
        **kwargs: object,
    ) -> None:
        super().__init__(session_id)
        self.kind = kind
        self.on_write = on_write
        self.writes: list[str] = []
        self.sizes: list[tuple[int, int]] = []
        self.kwargs = kwargs
        self.started = False
        self.killed = False
        self._alive = True
        self._pid = next(_fake_pids)

    async def start(self) -> None:
        self.started = True

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._alive

    def write(self, data: str) -> None:
        self.writes.append(data)
        if self.on_write is not None:
            self.on_write(self, data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def kill(self) -> None:
        if not self._alive:
            return
        self._alive = False
        self.killed = True
        self._fire_exit(None)

    # Test helpers

    def feed(self, data: str) -> None:
        self.output.emit(data)

    def exit(self, code: int | None = 0) -> None:
        self._alive = False
        self._fire_exit(code)

    def last_wrapped(self) -> re.Match[str]:
        for data in reversed(self.writes):
            match = WRAPPED.match(data)
            if match:
                return match
        raise AssertionError(f"no wrapped command in {self.writes!r}")


def echo_shell(session: FakeSession, data: str) -> None:
    """Behaves like a POSIX shell running ``echo <args>``."""
    match = WRAPPED.match(data)
    if not match:
        return
    command, sentinel = match.group("command"), match.group("sentinel")
    echoed = data.rstrip("\r")
    session.feed(echoed + "\r\n")
    if command.startswith("echo "):
        session.feed(command[5:] + "\r\n")
    code = 1 if command == "false" else 0
    session.feed(f"\r\n{sentinel}{code}\r\n$ ")


@pytest.fixture
def fast_config() -> ShellBridgeConfig:
    return ShellBridgeConfig(
        exec=ExecConfig(stall_timeout=0.2, hard_timeout=1.0, preempt_settle=0.05),
        display=DisplayConfig(debounce=0.001, flush_grace=0.002),
    )


@pytest.fixture
def created() -> list[FakeSession]:
    return []


@pytest.fixture
def registry(fast_config: ShellBridgeConfig, created: list[FakeSession]) -> Registry:
    def factory(session_id: str, **kwargs: object) -> FakeSession:
        session = FakeSession(session_id, on_write=echo_shell, **kwargs)
        created.append(session)
        return session

    return Registry(fast_config, local_factory=factory)


@pytest.fixture
def sink() -> Wire:
    return Wire("test")


def drain(q) -> list:
    """Everything currently queued on a wire subscription."""
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events
