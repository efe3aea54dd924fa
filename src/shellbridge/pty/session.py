"""Local PTY session: an interactive shell on a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios

from shellbridge.pty.shell import ShellSpec, detect_shell
from shellbridge.session.base import Session, SessionKind

logger = logging.getLogger(__name__)


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    PENDING = "pending"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us (SIGKILL)
    EXITED = "exited"  # Process exited on its own


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(): stdin is the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class LocalSession(Session):
    """A shell running on a local pseudo-terminal.

    The shell is its own session leader with the PTY slave as controlling
    terminal, so Ctrl-C written to the master reaches the foreground job
    and ``kill()`` can take down the whole process group.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when spawned
    from within an asyncio event loop on macOS.
    """

    kind = SessionKind.LOCAL

    def __init__(
        self,
        session_id: str,
        shell: ShellSpec | None = None,
        cwd: str | None = None,
        cols: int = 80,
        rows: int = 30,
        env: dict[str, str] | None = None,
        term: str = "xterm-256color",
    ) -> None:
        super().__init__(session_id)
        self.shell = shell or detect_shell()
        self.dialect = self.shell.dialect
        self.cwd = cwd or os.path.expanduser("~")
        self.cols = cols
        self.rows = rows
        self.env = env or {}
        self.term = term

        self._master_fd = -1
        self._proc: subprocess.Popen | None = None
        self._pgid = 0
        self._reader_task: asyncio.Task | None = None
        self._status = PTYStatus.PENDING
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def start(self) -> None:
        """Spawn the shell in a new PTY with its own process group."""
        master_fd, slave_fd = pty.openpty()
        self._master_fd = master_fd
        _set_winsize(master_fd, self.cols, self.rows)

        env = {**os.environ, **self.env}
        env["TERM"] = self.term
        env.setdefault("COLORTERM", "truecolor")

        cwd = self.cwd if os.path.isdir(self.cwd) else os.path.expanduser("~")
        try:
            self._proc = subprocess.Popen(
                self.shell.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                preexec_fn=_make_controlling_tty,
                env=env,
                cwd=cwd,
            )
        except BaseException:
            os.close(master_fd)
            self._master_fd = -1
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._pgid = os.getpgid(self._proc.pid)
        self._status = PTYStatus.RUNNING
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY session %s started: pid=%d shell=%s cwd=%s",
            self.id,
            self._proc.pid,
            " ".join(self.shell.argv),
            cwd,
        )

    async def _read_loop(self) -> None:
        """Continuously read output from the PTY master fd."""
        loop = asyncio.get_running_loop()
        fd = self._master_fd
        try:
            while self._status == PTYStatus.RUNNING:
                try:
                    data = await loop.run_in_executor(None, os.read, fd, 4096)
                except OSError:
                    # EIO once the slave side is gone
                    break
                if not data:
                    break
                text = self._decoder.decode(data)
                if text:
                    self.output.emit(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("PTY reader %s ended: %s", self.id, e)
        finally:
            tail = self._decoder.decode(b"", final=True)
            if tail and self._status == PTYStatus.RUNNING:
                self.output.emit(tail)
            if self._status == PTYStatus.RUNNING:
                exit_code = await self._reap()
                self._status = PTYStatus.EXITED
                self._close_fd()
                logger.info("PTY session %s exited (code=%s)", self.id, exit_code)
                self._fire_exit(exit_code)

    async def _reap(self) -> int | None:
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._proc.wait, 2)
        except subprocess.TimeoutExpired:
            return self._proc.poll()

    def write(self, data: str) -> None:
        if self._status != PTYStatus.RUNNING:
            logger.debug("Dropped write to PTY session %s (%s)", self.id, self._status.value)
            return
        payload = data.encode("utf-8")
        while payload:
            try:
                written = os.write(self._master_fd, payload)
            except BlockingIOError:
                continue
            except OSError as e:
                logger.debug("Write to PTY session %s failed: %s", self.id, e)
                return
            payload = payload[written:]

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows
        if self._status != PTYStatus.RUNNING:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as e:
            logger.debug("Resize of PTY session %s failed: %s", self.id, e)

    def kill(self) -> None:
        """Kill the entire process tree."""
        if self._status not in (PTYStatus.RUNNING, PTYStatus.KILLING):
            return

        self._status = PTYStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY session %s: %s", self.id, e)

        # Reap without blocking the event loop (avoids zombies)
        exit_code = None
        if self._proc is not None:
            exit_code = self._proc.poll()
            if exit_code is None:
                try:
                    asyncio.get_running_loop().run_in_executor(None, self._wait_reaped)
                except RuntimeError:
                    self._wait_reaped()

        self._close_fd()
        self._status = PTYStatus.KILLED
        self._fire_exit(exit_code)

    def _wait_reaped(self) -> None:
        if self._proc is None:
            return
        try:
            self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("PTY session %s did not exit after SIGKILL", self.id)

    def _close_fd(self) -> None:
        if self._master_fd < 0:
            return
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc is not None else 0

    @property
    def alive(self) -> bool:
        return self._status == PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status
