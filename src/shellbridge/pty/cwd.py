"""Working-directory resolution for local shell processes."""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from shellbridge.output import strip_ansi
from shellbridge.pty.helpers import HelperProcesses

logger = logging.getLogger(__name__)

# PowerShell: "PS C:\Users\foo\project>"
_PS_PROMPT = re.compile(r"^PS\s+([A-Z]:\\[^>]*?)>\s*$", re.IGNORECASE)
# cmd.exe: "C:\Users\foo\project>"
_CMD_PROMPT = re.compile(r"^([A-Z]:\\[^>]*?)>\s*$", re.IGNORECASE)


class CwdStrategy(ABC):
    """One OS family's way of finding a process's working directory."""

    @abstractmethod
    async def lookup(self, pid: int, history: str | None) -> str | None:
        """Return the cwd, or None. May raise; the resolver swallows errors."""
        ...


class ProcCwd(CwdStrategy):
    """Linux: follow the /proc/<pid>/cwd symlink."""

    def __init__(self, proc_root: str = "/proc") -> None:
        self.proc_root = proc_root

    async def lookup(self, pid: int, history: str | None) -> str | None:
        return os.readlink(os.path.join(self.proc_root, str(pid), "cwd")) or None


class LsofCwd(CwdStrategy):
    """macOS: ask lsof for the process's cwd descriptor."""

    def __init__(self, helpers: HelperProcesses, timeout: float = 5.0) -> None:
        self.helpers = helpers
        self.timeout = timeout

    async def lookup(self, pid: int, history: str | None) -> str | None:
        result = await self.helpers.run(
            ["lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn"], timeout=self.timeout
        )
        for line in result.stdout.splitlines():
            # -F output: one field per line, "n" prefixes the name field
            if line.startswith("n") and len(line) > 1:
                return line[1:]
        return None


class PromptHistoryCwd(CwdStrategy):
    """Windows: Set-Location does not change the OS-level cwd of the shell,
    so scan the most recent prompt in the session's history instead."""

    def __init__(self, scan_lines: int = 20) -> None:
        self.scan_lines = scan_lines

    async def lookup(self, pid: int, history: str | None) -> str | None:
        return parse_prompt_cwd(history, self.scan_lines)


def parse_prompt_cwd(history: str | None, scan_lines: int = 20) -> str | None:
    """Find the newest PowerShell or cmd.exe prompt in raw history."""
    if not history:
        return None
    for line in reversed(history.split("\n")[-scan_lines:]):
        line = strip_ansi(line).strip()
        match = _PS_PROMPT.match(line) or _CMD_PROMPT.match(line)
        if match:
            return match.group(1)
    return None


def strategy_for(
    helpers: HelperProcesses, platform: str | None = None, timeout: float = 5.0
) -> CwdStrategy:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return PromptHistoryCwd()
    if platform == "darwin":
        return LsofCwd(helpers, timeout)
    return ProcCwd()


@dataclass
class _CacheEntry:
    path: str
    captured_at: float


class CwdResolver:
    """Cached ``pid -> cwd`` lookup.

    Completion requests fire on every keystroke, so successful lookups are
    cached per pid for ``ttl`` seconds. Failures resolve to None and are
    not cached.
    """

    def __init__(
        self,
        strategy: CwdStrategy,
        ttl: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.strategy = strategy
        self.ttl = ttl
        self._clock = clock
        self._cache: dict[int, _CacheEntry] = {}

    async def resolve(self, pid: int, history: str | None = None) -> str | None:
        cached = self._cache.get(pid)
        now = self._clock()
        if cached is not None and now - cached.captured_at < self.ttl:
            return cached.path
        try:
            path = await self.strategy.lookup(pid, history)
        except Exception as e:
            logger.debug("cwd lookup for pid %d failed: %s", pid, e)
            return None
        if path:
            self._cache[pid] = _CacheEntry(path, self._clock())
        return path or None

    def forget(self, pid: int) -> None:
        self._cache.pop(pid, None)
