"""Channel dispatch with Pydantic parameter validation.

Each caller-facing operation is a named channel (``session.write``,
``remote.connect``...) whose ``data`` is validated against a params model
before the handler runs. Both transport hosts share one ``Dispatcher``;
the networked host additionally passes the calling client's id so that
ownership and gateway-mode rules can be enforced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shellbridge.errors import ChannelError
from shellbridge.remote.profiles import RemoteConfig
from shellbridge.session.service import SessionService
from shellbridge.session.wire import Wire

logger = logging.getLogger(__name__)


class _Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EmptyParams(_Params):
    pass


class CreateParams(_Params):
    cols: int | None = Field(default=None, gt=0)
    rows: int | None = Field(default=None, gt=0)
    cwd: str | None = None
    reconnect_id: str | None = Field(default=None, alias="reconnectId")


class SessionParams(_Params):
    session_id: str = Field(alias="sessionId")


class WriteParams(SessionParams):
    data: str


class ResizeParams(SessionParams):
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class CommandParams(SessionParams):
    command: str


class ExecInTerminalParams(CommandParams):
    preempt: bool = False


class ReadHistoryParams(SessionParams):
    lines: int | None = Field(default=None, ge=0)


class SetHistoryParams(SessionParams):
    history: str


class SystemInfoParams(_Params):
    session_id: str | None = Field(default=None, alias="sessionId")


class CompletionsParams(_Params):
    prefix: str
    cwd: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")


class CheckCommandParams(_Params):
    command: str
    session_id: str | None = Field(default=None, alias="sessionId")


class ProfilesWriteParams(_Params):
    profiles: list[dict[str, Any]]


@dataclass
class CallerContext:
    """Who is calling, and where their session events should go."""

    sink: Wire
    client_id: str | None = None


Handler = Callable[[Any, CallerContext], Awaitable[Any]]


@dataclass
class Channel:
    name: str
    param_model: type[BaseModel]
    handler: Handler
    session_scoped: bool = False  # names a session the caller must own
    local_shell: bool = False  # exposes the host's own shell


class Dispatcher:
    """Registry of channels plus the rules applied before each handler.

    ``mode="gateway"`` refuses channels that reach the host's own shell
    and requires every session-scoped call to name a remote session.
    ``enforce_ownership`` rejects session-scoped calls on sessions another
    client owns.
    """

    def __init__(
        self,
        service: SessionService,
        mode: Literal["local", "gateway"] = "local",
        enforce_ownership: bool = False,
    ) -> None:
        self.service = service
        self.mode = mode
        self.enforce_ownership = enforce_ownership
        self._channels: dict[str, Channel] = {}
        self._register_builtin()

    def register(self, channel: Channel) -> None:
        if channel.name in self._channels:
            logger.warning("Channel %s already registered, overwriting", channel.name)
        self._channels[channel.name] = channel

    def names(self) -> list[str]:
        return list(self._channels)

    async def dispatch(
        self, name: str, data: dict[str, Any] | None, ctx: CallerContext
    ) -> Any:
        channel = self._channels.get(name)
        if channel is None:
            raise ChannelError(name, f"Unknown channel: {name}")
        try:
            params = channel.param_model.model_validate(data or {})
        except ValidationError as e:
            raise ChannelError(name, f"Invalid parameters: {e}") from e

        self._check_access(channel, params, ctx)
        return await channel.handler(params, ctx)

    def _check_access(self, channel: Channel, params: Any, ctx: CallerContext) -> None:
        gateway = self.mode == "gateway"
        if gateway and channel.local_shell:
            raise ChannelError(
                channel.name, "Gateway mode: local shell access is disabled"
            )
        if not channel.session_scoped:
            return
        session_id = getattr(params, "session_id", None)
        entry = self.service.registry.get(session_id) if session_id else None
        if gateway and (entry is None or not entry.is_remote):
            raise ChannelError(
                channel.name, "Gateway mode: only remote sessions are available"
            )
        if (
            self.enforce_ownership
            and entry is not None
            and entry.owner_id is not None
            and entry.owner_id != ctx.client_id
        ):
            raise ChannelError(channel.name, f"Session {session_id} is not owned by this client")

    def _refuse_foreign_attach(self, name: str, session_id: str | None, ctx: CallerContext) -> None:
        """Refuse re-attaching a live session that another client owns."""
        if not session_id or not self.enforce_ownership:
            return
        entry = self.service.registry.get(session_id)
        if entry is not None and entry.owner_id not in (None, ctx.client_id):
            raise ChannelError(name, f"Session {session_id} is not owned by this client")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _register_builtin(self) -> None:
        s = self.service

        async def create(p: CreateParams, ctx: CallerContext) -> str:
            self._refuse_foreign_attach("session.create", p.reconnect_id, ctx)
            return await s.create(
                cols=p.cols,
                rows=p.rows,
                cwd=p.cwd,
                reconnect_id=p.reconnect_id,
                sink=ctx.sink,
                owner_id=ctx.client_id,
            )

        async def exists(p: SessionParams, ctx: CallerContext) -> bool:
            return s.exists(p.session_id)

        async def write(p: WriteParams, ctx: CallerContext) -> None:
            s.write(p.session_id, p.data)

        async def resize(p: ResizeParams, ctx: CallerContext) -> None:
            s.resize(p.session_id, p.cols, p.rows)

        async def close(p: SessionParams, ctx: CallerContext) -> None:
            s.close(p.session_id)

        async def exec_(p: CommandParams, ctx: CallerContext) -> dict[str, Any]:
            return await s.exec(p.session_id, p.command)

        async def exec_in_terminal(p: ExecInTerminalParams, ctx: CallerContext) -> dict[str, Any]:
            return await s.exec_in_terminal(p.session_id, p.command, preempt=p.preempt)

        async def get_history(p: SessionParams, ctx: CallerContext) -> str:
            return s.get_history(p.session_id)

        async def read_history(p: ReadHistoryParams, ctx: CallerContext) -> str:
            return s.read_history(p.session_id, p.lines)

        async def clear_history(p: SessionParams, ctx: CallerContext) -> None:
            s.clear_history(p.session_id)

        async def set_history(p: SetHistoryParams, ctx: CallerContext) -> None:
            s.set_history(p.session_id, p.history)

        async def get_cwd(p: SessionParams, ctx: CallerContext) -> str | None:
            return await s.get_cwd(p.session_id)

        async def get_system_info(p: SystemInfoParams, ctx: CallerContext) -> dict[str, str]:
            return await s.get_system_info(p.session_id)

        async def get_completions(p: CompletionsParams, ctx: CallerContext) -> list[str]:
            return await s.get_completions(p.prefix, p.cwd, p.session_id)

        async def check_command(p: CheckCommandParams, ctx: CallerContext) -> bool:
            return await s.check_command(p.command, p.session_id)

        async def scan_commands(p: EmptyParams, ctx: CallerContext) -> list[str]:
            return await s.scan_commands()

        async def remote_connect(p: RemoteConfig, ctx: CallerContext) -> dict[str, Any]:
            self._refuse_foreign_attach("remote.connect", p.session_id, ctx)
            return await s.connect_remote(p, sink=ctx.sink, owner_id=ctx.client_id)

        async def remote_test(p: RemoteConfig, ctx: CallerContext) -> dict[str, Any]:
            return await s.test_connection(p)

        async def remote_disconnect(p: SessionParams, ctx: CallerContext) -> bool:
            return s.disconnect_remote(p.session_id)

        async def profiles_read(p: EmptyParams, ctx: CallerContext) -> list[dict[str, Any]]:
            return await s.read_profiles()

        async def profiles_write(p: ProfilesWriteParams, ctx: CallerContext) -> bool:
            return await s.write_profiles(p.profiles)

        for channel in [
            Channel("session.create", CreateParams, create, local_shell=True),
            Channel("session.exists", SessionParams, exists),
            Channel("session.write", WriteParams, write, session_scoped=True),
            Channel("session.resize", ResizeParams, resize, session_scoped=True),
            Channel("session.close", SessionParams, close, session_scoped=True),
            Channel("session.exec", CommandParams, exec_, session_scoped=True),
            Channel(
                "session.execInTerminal",
                ExecInTerminalParams,
                exec_in_terminal,
                session_scoped=True,
            ),
            Channel("session.getHistory", SessionParams, get_history, session_scoped=True),
            Channel("session.readHistory", ReadHistoryParams, read_history, session_scoped=True),
            Channel("session.clearHistory", SessionParams, clear_history, session_scoped=True),
            Channel("session.setHistory", SetHistoryParams, set_history, session_scoped=True),
            Channel("session.getCwd", SessionParams, get_cwd, session_scoped=True),
            Channel(
                "session.getSystemInfo", SystemInfoParams, get_system_info, session_scoped=True
            ),
            Channel(
                "session.getCompletions", CompletionsParams, get_completions, session_scoped=True
            ),
            Channel(
                "session.checkCommand", CheckCommandParams, check_command, session_scoped=True
            ),
            Channel("session.scanCommands", EmptyParams, scan_commands, local_shell=True),
            Channel("remote.connect", RemoteConfig, remote_connect),
            Channel("remote.testConnection", RemoteConfig, remote_test),
            Channel("remote.disconnect", SessionParams, remote_disconnect, session_scoped=True),
            Channel("remote.profiles.read", EmptyParams, profiles_read),
            Channel("remote.profiles.write", ProfilesWriteParams, profiles_write),
        ]:
            self.register(channel)
