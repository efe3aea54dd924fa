"""Remote (SSH) session: the session contract over a paramiko shell channel."""

from __future__ import annotations

import asyncio
import base64
import codecs
import hashlib
import itertools
import logging
import os
import posixpath
import shlex
from typing import Any

import paramiko

from shellbridge.errors import RemoteConnectionError
from shellbridge.pty.helpers import HelperResult, rank_completions
from shellbridge.pty.shell import POSIX_DIALECT
from shellbridge.remote.errors import friendly_ssh_error
from shellbridge.remote.profiles import RemoteConfig
from shellbridge.session.base import Session, SessionKind

logger = logging.getLogger(__name__)

# Remote pids are not observable locally; these never collide with real ones.
_synthetic_pids = itertools.count(-1000, -1)

DEFAULT_SYSTEM_INFO = {
    "platform": "linux",
    "arch": "unknown",
    "shell": "bash",
    "release": "unknown",
}


def connect_kwargs(config: RemoteConfig, timeout: float) -> dict[str, Any]:
    """Build ``SSHClient.connect`` arguments for the configured auth method.

    Raises ``RemoteConnectionError`` for problems detectable before dialing:
    an unreadable key file or a missing SSH agent.
    """
    kwargs: dict[str, Any] = {
        "hostname": config.host,
        "port": config.port,
        "username": config.username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if config.auth_method == "password":
        kwargs["password"] = config.password or ""
    elif config.auth_method == "key":
        key_path = config.key_path()
        if key_path:
            try:
                with open(key_path, "rb") as f:
                    f.read(1)
            except OSError as e:
                raise RemoteConnectionError(f"Cannot read key file: {e}") from e
            kwargs["key_filename"] = key_path
        else:
            kwargs["look_for_keys"] = True
        if config.passphrase:
            kwargs["passphrase"] = config.passphrase
    elif config.auth_method == "agent":
        if not os.environ.get("SSH_AUTH_SOCK"):
            raise RemoteConnectionError("SSH_AUTH_SOCK not set: SSH agent not available")
        kwargs["allow_agent"] = True
    return kwargs


def key_fingerprint(key: paramiko.PKey) -> str:
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")


def _open_client(config: RemoteConfig, timeout: float) -> paramiko.SSHClient:
    kwargs = connect_kwargs(config, timeout)
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(**kwargs)
    except RemoteConnectionError:
        client.close()
        raise
    except Exception as e:
        client.close()
        raise RemoteConnectionError(friendly_ssh_error(e, config)) from e
    return client


def _shell_exit_status(channel: paramiko.Channel) -> int:
    """Exit status the server reported for the shell, or 0 if it sent none."""
    try:
        if channel.exit_status_ready():
            status = channel.recv_exit_status()
            if status >= 0:
                return status
    except (OSError, paramiko.SSHException) as e:
        logger.debug("No exit status from remote shell: %s", e)
    return 0


async def probe_connection(config: RemoteConfig, timeout: float = 10.0) -> dict[str, Any]:
    """Dial, authenticate and hang up. Never raises."""
    loop = asyncio.get_running_loop()
    try:
        client = await asyncio.wait_for(
            loop.run_in_executor(None, _open_client, config, timeout), timeout + 1
        )
    except RemoteConnectionError as e:
        return {"success": False, "error": str(e)}
    except asyncio.TimeoutError:
        return {"success": False, "error": "Connection timed out"}
    client.close()
    return {"success": True}


class RemoteSession(Session):
    """An interactive login shell on an SSH server.

    The visible shell is one paramiko channel; ``exec()`` opens a separate
    non-interactive channel per call so lookups never touch the shell the
    user sees.
    """

    kind = SessionKind.REMOTE
    dialect = POSIX_DIALECT

    def __init__(
        self,
        session_id: str,
        config: RemoteConfig,
        term: str = "xterm-256color",
        connect_timeout: float = 10.0,
        keepalive_interval: int = 15,
        exec_timeout: float = 5.0,
    ) -> None:
        super().__init__(session_id)
        self.config = config
        self.term = term
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.exec_timeout = exec_timeout
        self.fingerprint: str | None = None

        self._pid = next(_synthetic_pids)
        self._client: paramiko.SSHClient | None = None
        self._channel: paramiko.Channel | None = None
        self._connected = False
        self._reader_task: asyncio.Task | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._cached_cwd: str | None = None
        self._cached_system_info: dict[str, str] | None = None

    async def start(self) -> None:
        """Connect, authenticate and open the interactive shell channel."""
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self._connect_blocking),
                self.connect_timeout + 5,
            )
        except asyncio.TimeoutError as e:
            self._close_transport()
            raise RemoteConnectionError(
                f"Connection timed out: {self.config.host}:{self.config.port} did not respond"
            ) from e
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(
            "Remote session %s connected: %s port=%d pid=%d",
            self.id,
            self.config.target,
            self.config.port,
            self._pid,
        )

    def _connect_blocking(self) -> None:
        client = _open_client(self.config, self.connect_timeout)
        try:
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(self.keepalive_interval)
                self.fingerprint = key_fingerprint(transport.get_remote_server_key())
            channel = client.invoke_shell(
                term=self.term, width=self.config.cols, height=self.config.rows
            )
        except Exception as e:
            client.close()
            raise RemoteConnectionError(friendly_ssh_error(e, self.config)) from e
        self._client = client
        self._channel = channel

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        channel = self._channel
        exit_code = 0
        try:
            while self._connected and channel is not None:
                try:
                    data = await loop.run_in_executor(None, channel.recv, 4096)
                except (OSError, EOFError, paramiko.SSHException):
                    break
                if not data:
                    exit_code = _shell_exit_status(channel)
                    break
                text = self._decoder.decode(data)
                if text:
                    self.output.emit(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Remote reader %s ended: %s", self.id, e)
        finally:
            was_connected = self._connected
            self._connected = False
            self._close_transport()
            if was_connected:
                logger.info("Remote session %s disconnected", self.id)
            self._fire_exit(exit_code)

    def write(self, data: str) -> None:
        if not self._connected or self._channel is None:
            logger.debug("Dropped write to remote session %s", self.id)
            return
        try:
            self._channel.sendall(data.encode("utf-8"))
        except (OSError, paramiko.SSHException) as e:
            logger.debug("Write to remote session %s failed: %s", self.id, e)

    def resize(self, cols: int, rows: int) -> None:
        self.config.cols, self.config.rows = cols, rows
        if self._channel is None or not self._connected:
            return
        try:
            self._channel.resize_pty(width=cols, height=rows)
        except (OSError, paramiko.SSHException) as e:
            logger.debug("Resize of remote session %s failed: %s", self.id, e)

    def kill(self) -> None:
        if not self._connected and self._client is None:
            return
        self._connected = False
        self._close_transport()
        logger.info("Closed remote session %s", self.id)
        self._fire_exit(0)

    def _close_transport(self) -> None:
        channel, self._channel = self._channel, None
        client, self._client = self._client, None
        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug("Error closing channel of %s: %s", self.id, e)
        if client is not None:
            client.close()

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Non-interactive channel
    # ------------------------------------------------------------------

    def _exec_blocking(self, command: str, timeout: float) -> HelperResult:
        client = self._client
        if client is None:
            raise RemoteConnectionError("Remote session is not connected")
        _, stdout, stderr = client.exec_command(command, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        return HelperResult(out, err, stdout.channel.recv_exit_status())

    async def exec(self, command: str, timeout: float | None = None) -> HelperResult:
        """Run ``command`` on a fresh exec channel and collect its output."""
        timeout = timeout or self.exec_timeout
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._exec_blocking, command, timeout),
                timeout,
            )
        except asyncio.TimeoutError:
            return HelperResult(returncode=124, timed_out=True)

    async def get_cwd(self) -> str | None:
        try:
            result = await self.exec("pwd")
        except Exception as e:
            logger.debug("Remote pwd on %s failed: %s", self.id, e)
            return self._cached_cwd
        cwd = result.stdout.strip()
        if cwd:
            self._cached_cwd = cwd
        return self._cached_cwd

    async def get_system_info(self) -> dict[str, str]:
        if self._cached_system_info is not None:
            return self._cached_system_info
        try:
            platform, arch, shell, release = await asyncio.gather(
                self.exec("uname -s"),
                self.exec("uname -m"),
                self.exec("echo $SHELL"),
                self.exec("uname -r"),
            )
        except Exception as e:
            logger.debug("Remote system info on %s failed: %s", self.id, e)
            return dict(DEFAULT_SYSTEM_INFO)
        results = (platform, arch, shell, release)
        if any(r.timed_out or r.returncode != 0 for r in results):
            # Only a complete answer is cached; retry on the next call
            logger.debug("Remote system info on %s incomplete", self.id)
            return dict(DEFAULT_SYSTEM_INFO)
        self._cached_system_info = {
            "platform": platform.stdout.strip().lower() or "linux",
            "arch": arch.stdout.strip() or "unknown",
            "shell": posixpath.basename(shell.stdout.strip() or "bash"),
            "release": release.stdout.strip() or "unknown",
        }
        return self._cached_system_info

    async def get_completions(self, prefix: str, limit: int = 15) -> list[str]:
        parts = prefix.strip().split()
        word = parts[-1] if parts else ""
        comp_type = "-abck" if len(parts) <= 1 else "-df"
        inner = f"compgen {comp_type} -- {shlex.quote(word)} 2>/dev/null | sort -u | head -30"
        try:
            result = await self.exec(f"bash -c {shlex.quote(inner)}")
        except Exception as e:
            logger.debug("Remote completions on %s failed: %s", self.id, e)
            return []
        return rank_completions(result.stdout.splitlines(), limit)

    async def check_command(self, name: str) -> bool:
        try:
            result = await self.exec(f"command -v {shlex.quote(name)}")
        except Exception as e:
            logger.debug("Remote command check on %s failed: %s", self.id, e)
            return False
        return result.returncode == 0

