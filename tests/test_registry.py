"""Tests for shellbridge.session.registry.Registry."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeSession, drain
from shellbridge.config import HistoryConfig, ShellBridgeConfig, TerminalConfig
from shellbridge.errors import SessionNotFoundError
from shellbridge.session.base import SessionKind
from shellbridge.session.registry import Registry
from shellbridge.session.wire import EventType, Wire


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_starts_session(
        self, registry: Registry, created: list[FakeSession]
    ) -> None:
        session_id = await registry.create(cols=120, rows=40, cwd="/tmp")
        assert registry.exists(session_id)
        assert len(session_id) == 8
        session = created[0]
        assert session.started
        assert session.kwargs["cols"] == 120
        assert session.kwargs["rows"] == 40
        assert session.kwargs["cwd"] == "/tmp"

    @pytest.mark.asyncio
    async def test_defaults_from_config(
        self, registry: Registry, created: list[FakeSession]
    ) -> None:
        await registry.create()
        assert created[0].kwargs["cols"] == 80
        assert created[0].kwargs["rows"] == 30
        assert created[0].kwargs["term"] == "xterm-256color"

    @pytest.mark.asyncio
    async def test_reconnect_live_session(
        self, registry: Registry, created: list[FakeSession]
    ) -> None:
        session_id = await registry.create()
        new_sink = Wire("new")
        again = await registry.create(cols=100, rows=50, reconnect_id=session_id, sink=new_sink)
        assert again == session_id
        assert len(created) == 1
        assert created[0].sizes == [(100, 50)]
        assert registry.get(session_id).sink is new_sink

    @pytest.mark.asyncio
    async def test_reconnect_dead_session_creates_new(
        self, registry: Registry, created: list[FakeSession]
    ) -> None:
        session_id = await registry.create()
        created[0].exit(0)
        new_id = await registry.create(reconnect_id=session_id)
        assert new_id != session_id
        assert len(created) == 2

    @pytest.mark.asyncio
    async def test_max_sessions_kills_oldest(self, created: list[FakeSession]) -> None:
        config = ShellBridgeConfig(terminal=TerminalConfig(max_sessions=2))

        def factory(session_id: str, **kwargs: object) -> FakeSession:
            session = FakeSession(session_id, **kwargs)
            created.append(session)
            return session

        registry = Registry(config, local_factory=factory)
        first = await registry.create()
        second = await registry.create()
        third = await registry.create()
        assert not registry.exists(first)
        assert created[0].killed
        assert registry.ids() == [second, third]

    def test_register_duplicate_rejected(self, registry: Registry) -> None:
        session = FakeSession("dup")
        registry.register(session)
        with pytest.raises(ValueError):
            registry.register(FakeSession("dup"))


class TestRouting:
    @pytest.mark.asyncio
    async def test_write_and_resize(
        self, registry: Registry, created: list[FakeSession]
    ) -> None:
        session_id = await registry.create()
        registry.write(session_id, "ls\r")
        registry.resize(session_id, 132, 43)
        assert created[0].writes == ["ls\r"]
        assert created[0].sizes == [(132, 43)]

    def test_unknown_ids_are_noops(self, registry: Registry) -> None:
        registry.write("nope", "x")
        registry.resize("nope", 1, 1)
        assert registry.close("nope") is False

    def test_entry_raises(self, registry: Registry) -> None:
        with pytest.raises(SessionNotFoundError):
            registry.entry("nope")

    @pytest.mark.asyncio
    async def test_output_forwarded_and_recorded(
        self, registry: Registry, created: list[FakeSession], sink: Wire
    ) -> None:
        q = sink.subscribe()
        session_id = await registry.create(sink=sink)
        created[0].feed("\x1b[1mhi\x1b[0m\r\n")
        events = drain(q)
        assert [e.data["data"] for e in events] == ["\x1b[1mhi\x1b[0m\r\n"]
        assert events[0].session_id == session_id
        assert registry.get(session_id).history.text() == "\x1b[1mhi\x1b[0m\r\n"

    @pytest.mark.asyncio
    async def test_history_capped(self, created: list[FakeSession]) -> None:
        config = ShellBridgeConfig(history=HistoryConfig(max_chars=100, keep_chars=80))
        registry = Registry(config, local_factory=lambda sid, **kw: FakeSession(sid))
        session_id = await registry.create()
        session = registry.get(session_id).session
        for i in range(200):
            session.output.emit(f"{i:04d}\n")
        history = registry.get(session_id).history.text()
        assert len(history) <= 100
        assert history.endswith("0199\n")


class TestExit:
    @pytest.mark.asyncio
    async def test_exit_tears_down_and_notifies(
        self, registry: Registry, created: list[FakeSession], sink: Wire
    ) -> None:
        q = sink.subscribe()
        session_id = await registry.create(sink=sink)
        created[0].exit(2)
        assert not registry.exists(session_id)
        events = drain(q)
        assert [(e.type, e.data) for e in events] == [(EventType.EXIT, {"exit_code": 2})]

    @pytest.mark.asyncio
    async def test_close_kills_and_notifies(
        self, registry: Registry, created: list[FakeSession], sink: Wire
    ) -> None:
        q = sink.subscribe()
        session_id = await registry.create(sink=sink)
        assert registry.close(session_id) is True
        assert created[0].killed
        assert not registry.exists(session_id)
        events = drain(q)
        assert len(events) == 1
        assert events[0].type is EventType.EXIT

    @pytest.mark.asyncio
    async def test_close_without_exit_event(self, registry: Registry, sink: Wire) -> None:
        # A session whose kill reports the exit later still disappears at once
        class SlowKill(FakeSession):
            def kill(self) -> None:
                self.killed = True

        q = sink.subscribe()
        session = SlowKill("slow")
        registry.register(session, sink=sink)
        registry.close("slow")
        assert not registry.exists("slow")
        session.exit(0)  # late exit is ignored
        assert len(drain(q)) == 1

    @pytest.mark.asyncio
    async def test_remote_exit_reports_disconnect(
        self, registry: Registry, sink: Wire
    ) -> None:
        q = sink.subscribe()
        session = FakeSession("r1", kind=SessionKind.REMOTE)
        registry.register(session, sink=sink)
        session.exit(None)
        events = drain(q)
        assert [e.type for e in events] == [EventType.EXIT, EventType.REMOTE_STATUS]
        assert events[1].data == {"status": "disconnected"}

    @pytest.mark.asyncio
    async def test_remote_not_counted_for_limit(self, created: list[FakeSession]) -> None:
        config = ShellBridgeConfig(terminal=TerminalConfig(max_sessions=1))
        registry = Registry(config, local_factory=lambda sid, **kw: FakeSession(sid))
        registry.register(FakeSession("r1", kind=SessionKind.REMOTE))
        await registry.create()
        assert registry.exists("r1")


class TestCapture:
    @pytest.mark.asyncio
    async def test_output_goes_through_display(
        self, registry: Registry, created: list[FakeSession], sink: Wire
    ) -> None:
        q = sink.subscribe()
        session_id = await registry.create(sink=sink)
        registry.begin_capture(session_id)
        created[0].feed("buffered")
        assert drain(q) == []
        await asyncio.sleep(0.02)
        assert [e.data["data"] for e in drain(q)] == ["buffered"]

    @pytest.mark.asyncio
    async def test_end_capture_releases_display(
        self, registry: Registry, created: list[FakeSession], sink: Wire
    ) -> None:
        q = sink.subscribe()
        session_id = await registry.create(sink=sink)
        registry.begin_capture(session_id)
        assert registry.get(session_id).exec_active
        registry.end_capture(session_id)
        assert not registry.get(session_id).exec_active
        await asyncio.sleep(0.02)
        assert registry.get(session_id).display is None
        created[0].feed("direct")
        assert [e.data["data"] for e in drain(q)] == ["direct"]

    @pytest.mark.asyncio
    async def test_close_during_capture_flushes(
        self, registry: Registry, created: list[FakeSession], sink: Wire
    ) -> None:
        q = sink.subscribe()
        session_id = await registry.create(sink=sink)
        registry.begin_capture(session_id)
        created[0].feed("last words")
        registry.close(session_id)
        events = drain(q)
        assert events[0].data == {"data": "last words"}
        assert events[-1].type is EventType.EXIT


class TestOwnership:
    @pytest.mark.asyncio
    async def test_owned_by_and_rebind(self, registry: Registry, created: list[FakeSession]) -> None:
        a = await registry.create(owner_id="alice")
        b = await registry.create(owner_id="bob")
        assert registry.owned_by("alice") == [a]
        new_sink = Wire("alice-2")
        q = new_sink.subscribe()
        assert registry.rebind_owner("alice", new_sink) == [a]
        created[0].feed("to new socket")
        created[1].feed("not mine")
        events = drain(q)
        assert [(e.session_id, e.data["data"]) for e in events] == [(a, "to new socket")]
        assert registry.exists(b)

    @pytest.mark.asyncio
    async def test_close_owned_by(self, registry: Registry) -> None:
        a1 = await registry.create(owner_id="alice")
        a2 = await registry.create(owner_id="alice")
        b = await registry.create(owner_id="bob")
        assert sorted(registry.close_owned_by("alice")) == sorted([a1, a2])
        assert registry.ids() == [b]

    @pytest.mark.asyncio
    async def test_shutdown(self, registry: Registry, created: list[FakeSession]) -> None:
        await registry.create()
        await registry.create()
        await registry.shutdown()
        assert len(registry) == 0
        assert all(s.killed for s in created)
