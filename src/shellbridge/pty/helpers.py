"""Tracked helper subprocesses.

Completion lookups, command checks, cwd probes and non-interactive execs
all spawn short-lived children. Each one runs in its own process group and
is registered in a ``HelperProcesses`` set until it exits, so shutdown can
kill whatever is still running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class HelperResult:
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    timed_out: bool = False


async def _drain(stream: asyncio.StreamReader | None, parts: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        parts.append(chunk)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if sys.platform == "win32":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug("Could not kill helper pid=%d: %s", proc.pid, e)


class HelperProcesses:
    """Set of live helper subprocesses, killed together on shutdown."""

    def __init__(self) -> None:
        self._procs: set[asyncio.subprocess.Process] = set()

    async def run(
        self,
        argv: list[str] | None = None,
        *,
        shell_command: str | None = None,
        cwd: str | None = None,
        timeout: float = 5.0,
        env: dict[str, str] | None = None,
    ) -> HelperResult:
        """Run a helper to completion (or timeout) and collect its output.

        Exactly one of ``argv`` or ``shell_command`` must be given. On
        timeout the whole process group is killed and whatever output was
        produced so far is returned with ``timed_out`` set and return code
        124. Spawn failures raise ``OSError``.
        """
        if (argv is None) == (shell_command is None):
            raise ValueError("pass exactly one of argv or shell_command")

        kwargs: dict = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "cwd": cwd,
            "env": {**os.environ, **env} if env else None,
        }
        if sys.platform != "win32":
            kwargs["start_new_session"] = True  # New process group

        if shell_command is not None:
            proc = await asyncio.create_subprocess_shell(shell_command, **kwargs)
        else:
            proc = await asyncio.create_subprocess_exec(*argv, **kwargs)  # type: ignore[misc]

        self._procs.add(proc)
        out: list[bytes] = []
        err: list[bytes] = []
        readers = asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err))
        timed_out = False
        try:
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                _kill_group(proc)
                await proc.wait()
            await readers
        finally:
            self._procs.discard(proc)
            if proc.returncode is None:
                _kill_group(proc)

        return HelperResult(
            stdout=b"".join(out).decode("utf-8", errors="replace"),
            stderr=b"".join(err).decode("utf-8", errors="replace"),
            returncode=124 if timed_out else (proc.returncode or 0),
            timed_out=timed_out,
        )

    def kill_all(self) -> None:
        """Force-kill every helper still running."""
        for proc in list(self._procs):
            _kill_group(proc)
        if self._procs:
            logger.info("Killed %d helper process(es)", len(self._procs))
        self._procs.clear()

    def __len__(self) -> int:
        return len(self._procs)


def rank_completions(candidates: list[str], limit: int = 15) -> list[str]:
    """Deduplicate, shortest first, capped at ``limit``."""
    unique = list(dict.fromkeys(c for c in (x.strip() for x in candidates) if c))
    unique.sort(key=len)
    return unique[:limit]
