"""Transport-agnostic caller operations.

``SessionService`` is the one surface both transport hosts call into. It
routes each operation to the registry, the exec protocol, a local helper
subprocess or the remote session's exec channel, and shapes the result
the way callers expect it on the wire.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import shlex
import sys
import uuid
from typing import Any

from shellbridge.config import ShellBridgeConfig
from shellbridge.errors import RemoteConnectionError, SessionBusyError
from shellbridge.output import clean_history, strip_sentinels
from shellbridge.pty.helpers import rank_completions
from shellbridge.pty.shell import detect_shell
from shellbridge.remote.profiles import ProfileStore, RemoteConfig, RemoteProfile
from shellbridge.remote.session import RemoteSession, probe_connection
from shellbridge.session.exec import SentinelExecutor
from shellbridge.session.registry import Registry, SessionEntry
from shellbridge.session.wire import Wire

logger = logging.getLogger(__name__)

_COMMAND_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


class SessionService:
    """Every caller-facing session and remote operation."""

    def __init__(
        self,
        registry: Registry | None = None,
        config: ShellBridgeConfig | None = None,
        executor: SentinelExecutor | None = None,
        profiles: ProfileStore | None = None,
    ) -> None:
        if config is None:
            config = registry.config if registry is not None else ShellBridgeConfig()
        self.config = config
        self.registry = registry if registry is not None else Registry(self.config)
        self.executor = (
            executor
            if executor is not None
            else SentinelExecutor(self.registry, self.config.exec)
        )
        self.profiles = (
            profiles
            if profiles is not None
            else ProfileStore(self.config.remote.profiles_path)
        )
        self.helpers = self.registry.helpers

    # ------------------------------------------------------------------
    # Lifecycle and routing
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
        return await self.registry.create(
            cols=cols,
            rows=rows,
            cwd=cwd,
            reconnect_id=reconnect_id,
            sink=sink,
            owner_id=owner_id,
        )

    def exists(self, session_id: str) -> bool:
        return self.registry.exists(session_id)

    def write(self, session_id: str, data: str) -> None:
        self.registry.write(session_id, data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        self.registry.resize(session_id, cols, rows)

    def close(self, session_id: str) -> None:
        self.registry.close(session_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def exec(self, session_id: str, command: str) -> dict[str, Any]:
        """Run ``command`` outside the visible shell, in the session's cwd."""
        timeout = self.config.terminal.command_timeout
        entry = self.registry.get(session_id)
        if entry is not None and entry.is_remote:
            session: RemoteSession = entry.session  # type: ignore[assignment]
            try:
                result = await session.exec(command, timeout)
            except Exception as e:
                return {"stdout": "", "stderr": str(e), "exitCode": 1}
        else:
            cwd = await self._local_cwd(entry) or os.path.expanduser("~")
            try:
                result = await self.helpers.run(
                    shell_command=command, cwd=cwd, timeout=timeout
                )
            except OSError as e:
                return {"stdout": "", "stderr": str(e), "exitCode": 1}

        response: dict[str, Any] = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exitCode": result.returncode,
        }
        if result.timed_out:
            response["timedOut"] = True
        return response

    async def exec_in_terminal(
        self, session_id: str, command: str, preempt: bool = False
    ) -> dict[str, Any]:
        """Run ``command`` visibly in the session and capture its output."""
        try:
            result = await self.executor.execute(session_id, command, preempt=preempt)
        except SessionBusyError as e:
            return {"stdout": "", "exitCode": 1, "error": str(e)}
        return result.to_dict()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, session_id: str) -> str:
        entry = self.registry.get(session_id)
        if entry is None:
            return ""
        return strip_sentinels(entry.history.text(), self.config.exec.sentinel_prefix)

    def read_history(self, session_id: str, lines: int | None = None) -> str:
        entry = self.registry.get(session_id)
        raw = entry.history.text() if entry is not None else ""
        return clean_history(
            raw,
            lines if lines is not None else self.config.history.read_lines,
            self.config.exec.sentinel_prefix,
        )

    def clear_history(self, session_id: str) -> None:
        entry = self.registry.get(session_id)
        if entry is not None:
            entry.history.clear()

    def set_history(self, session_id: str, history: str) -> None:
        entry = self.registry.get(session_id)
        if entry is not None:
            entry.history.set(history)

    # ------------------------------------------------------------------
    # Environment lookups (best effort)
    # ------------------------------------------------------------------

    async def _local_cwd(self, entry: SessionEntry | None) -> str | None:
        if entry is None or entry.is_remote:
            return None
        return await self.registry.cwd_resolver.resolve(
            entry.session.pid, entry.history.text()
        )

    async def get_cwd(self, session_id: str) -> str | None:
        entry = self.registry.get(session_id)
        if entry is None:
            return None
        if entry.is_remote:
            return await entry.session.get_cwd()  # type: ignore[attr-defined]
        return await self._local_cwd(entry)

    async def get_system_info(self, session_id: str | None = None) -> dict[str, str]:
        entry = self.registry.get(session_id) if session_id else None
        if entry is not None and entry.is_remote:
            return await entry.session.get_system_info()  # type: ignore[attr-defined]
        return {
            "platform": sys.platform,
            "arch": platform.machine() or "unknown",
            "shell": detect_shell().name,
            "release": platform.release() or "unknown",
        }

    async def get_completions(
        self,
        prefix: str,
        cwd: str | None = None,
        session_id: str | None = None,
    ) -> list[str]:
        limit = self.config.terminal.max_completions
        entry = self.registry.get(session_id) if session_id else None
        if entry is not None and entry.is_remote:
            return await entry.session.get_completions(prefix, limit)  # type: ignore[attr-defined]
        if session_id and entry is None and cwd is None:
            return []

        work_dir = cwd or await self._local_cwd(entry) or os.path.expanduser("~")
        parts = prefix.strip().split()
        word = parts[-1] if parts else ""
        if sys.platform == "win32":
            quoted = word.replace("'", "''")
            source = "Get-Command" if len(parts) <= 1 else "Get-ChildItem"
            argv = [
                "powershell",
                "-NoProfile",
                "-Command",
                f"{source} '{quoted}*' -ErrorAction SilentlyContinue "
                "| Select-Object -First 30 -ExpandProperty Name",
            ]
        else:
            comp_type = "-abck" if len(parts) <= 1 else "-df"
            argv = ["bash", "-c", f"compgen {comp_type} -- {shlex.quote(word)} 2>/dev/null | head -30"]
        try:
            result = await self.helpers.run(
                argv, cwd=work_dir, timeout=self.config.terminal.helper_timeout
            )
        except OSError as e:
            logger.debug("Completion helper failed: %s", e)
            return []
        return rank_completions(result.stdout.splitlines(), limit)

    async def check_command(self, name: str, session_id: str | None = None) -> bool:
        if not _COMMAND_NAME.match(name):
            return False
        entry = self.registry.get(session_id) if session_id else None
        if entry is not None and entry.is_remote:
            return await entry.session.check_command(name)  # type: ignore[attr-defined]
        argv = ["where", name] if sys.platform == "win32" else ["which", name]
        try:
            result = await self.helpers.run(argv, timeout=self.config.terminal.helper_timeout)
        except OSError as e:
            logger.debug("Command check for %s failed: %s", name, e)
            return False
        return result.returncode == 0 and not result.timed_out

    async def scan_commands(self) -> list[str]:
        """Inventory of commands the local shell knows about."""
        results: list[str] = []
        if sys.platform == "win32":
            phases = [
                (
                    [
                        "powershell",
                        "-NoProfile",
                        "-Command",
                        "Get-Command -CommandType Application,Cmdlet "
                        "| Select-Object -ExpandProperty Name -First 500",
                    ],
                    10.0,
                )
            ]
        else:
            shell = os.environ.get("SHELL") or "/bin/bash"
            if shell.endswith("/bash"):
                functions = "compgen -A function 2>/dev/null"
            else:
                functions = "print -l ${(ok)functions} 2>/dev/null"
            phases = [
                (["bash", "-c", "compgen -abck 2>/dev/null | sort -u | head -1000"], 5.0),
                # Shell functions (nvm, pyenv) only load in interactive shells
                ([shell, "-lic", functions], 8.0),
            ]
        for argv, timeout in phases:
            try:
                result = await self.helpers.run(argv, timeout=timeout)
            except OSError as e:
                logger.debug("Command scan phase %s failed: %s", argv[0], e)
                continue
            results.extend(line.strip() for line in result.stdout.splitlines() if line.strip())
        return list(dict.fromkeys(results))

    # ------------------------------------------------------------------
    # Remote sessions
    # ------------------------------------------------------------------

    async def connect_remote(
        self,
        config: RemoteConfig,
        sink: Wire | None = None,
        owner_id: str | None = None,
    ) -> dict[str, Any]:
        """Open an SSH shell session. Raises ``RemoteConnectionError``."""
        if config.session_id:
            entry = self.registry.get(config.session_id)
            if entry is not None and not entry.is_remote:
                raise RemoteConnectionError(
                    f"Session {config.session_id} is not a remote session"
                )
            existing = self.registry.reconnect(
                config.session_id, sink, owner_id, config.cols, config.rows
            )
            if existing is not None:
                return {"sessionId": existing}

        remote = self.config.remote
        session = RemoteSession(
            config.session_id or uuid.uuid4().hex[:8],
            config,
            term=self.config.terminal.term,
            connect_timeout=remote.connect_timeout,
            keepalive_interval=remote.keepalive_interval,
            exec_timeout=remote.exec_timeout,
        )
        await session.start()
        config.fingerprint = session.fingerprint
        self.registry.register(session, sink=sink, owner_id=owner_id)

        if config.save_credentials or config.name:
            try:
                # Without an explicit id, reconnecting to a known target updates its profile
                await self.profiles.upsert(
                    RemoteProfile.from_config(config),
                    match_target="id" not in config.model_fields_set,
                )
            except OSError as e:
                logger.warning("Could not save profile %s: %s", config.id, e)

        if sink is not None:
            sink.send_remote_status(session.id, "connected")
        return {"sessionId": session.id}

    async def test_connection(self, config: RemoteConfig) -> dict[str, Any]:
        return await probe_connection(config, self.config.remote.connect_timeout)

    def disconnect_remote(self, session_id: str) -> bool:
        entry = self.registry.get(session_id)
        if entry is None or not entry.is_remote:
            return False
        return self.registry.close(session_id)

    async def read_profiles(self) -> list[dict[str, Any]]:
        profiles = await self.profiles.read()
        return [p.model_dump(by_alias=True, exclude_none=True) for p in profiles]

    async def write_profiles(self, profiles: list[dict[str, Any]]) -> bool:
        await self.profiles.write([RemoteProfile.model_validate(p) for p in profiles])
        return True

    async def shutdown(self) -> None:
        await self.registry.shutdown()
