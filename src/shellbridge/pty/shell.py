"""Shell discovery and shell dialects.

``detect_shell()`` picks a usable shell binary for this OS. A
``ShellDialect`` carries the shell-specific strings the sentinel exec
protocol needs (line kill, exit-status wrapper).
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShellDialect:
    """How to drive one family of interactive shells."""

    name: str
    line_kill: str
    wrapper: str  # format string with {command} and {sentinel}
    interrupt: str = "\x03"
    enter: str = "\r"

    def wrap(self, command: str, sentinel: str) -> str:
        """Append the suffix that prints ``sentinel`` + exit status on its own line."""
        return self.wrapper.format(command=command, sentinel=sentinel)


# Ctrl+U clears the readline/zle buffer without signalling the foreground job.
POSIX_DIALECT = ShellDialect(
    name="posix",
    line_kill="\x15",
    wrapper="{command}; printf '\\n{sentinel}%d\\n' $?",
)

# PSReadLine clears the line on Escape.
POWERSHELL_DIALECT = ShellDialect(
    name="powershell",
    line_kill="\x1b",
    wrapper='{command}; Write-Host "{sentinel}$LASTEXITCODE"',
)

# %^errorlevel% defers expansion until after the command has run.
CMD_DIALECT = ShellDialect(
    name="cmd",
    line_kill="\x1b",
    wrapper="{command} & echo. & call echo {sentinel}%^errorlevel%",
)


@dataclass(frozen=True)
class ShellSpec:
    """A shell binary plus its startup arguments."""

    path: str
    args: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        base = os.path.basename(self.path.replace("\\", "/"))
        if base.lower().endswith(".exe"):
            base = base[:-4]
        return base

    @property
    def dialect(self) -> ShellDialect:
        if self.name.lower() in ("pwsh", "powershell"):
            return POWERSHELL_DIALECT
        if self.name.lower() == "cmd":
            return CMD_DIALECT
        return POSIX_DIALECT

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]


class ShellLocator(ABC):
    """Per-OS strategy for finding an interactive shell."""

    fallback: ShellSpec

    @abstractmethod
    def candidates(self) -> list[str]:
        """Candidate shells in priority order."""
        ...

    @abstractmethod
    def exists(self, candidate: str) -> bool: ...

    @abstractmethod
    def args_for(self, candidate: str) -> tuple[str, ...]: ...

    def detect(self) -> ShellSpec:
        for candidate in self.candidates():
            try:
                if self.exists(candidate):
                    return ShellSpec(candidate, self.args_for(candidate))
            except OSError as e:
                logger.debug("Shell candidate %s unusable: %s", candidate, e)
        return self.fallback


class PosixShellLocator(ShellLocator):
    """$SHELL first, then the usual zsh/bash install paths, then /bin/sh."""

    fallback = ShellSpec("/bin/sh")

    def candidates(self) -> list[str]:
        env_shell = os.environ.get("SHELL")
        paths = [
            env_shell,
            "/bin/zsh",
            "/usr/bin/zsh",
            "/bin/bash",
            "/usr/bin/bash",
            "/bin/sh",
        ]
        return [p for p in paths if p]

    def exists(self, candidate: str) -> bool:
        return os.path.exists(candidate)

    def args_for(self, candidate: str) -> tuple[str, ...]:
        # zsh prints a reverse-video '%' before a prompt that follows a
        # partial line; PROMPT_SP off suppresses it.
        if candidate.endswith("/zsh"):
            return ("+o", "PROMPT_SP")
        return ()


class WindowsShellLocator(ShellLocator):
    """PowerShell 7, then Windows PowerShell, then cmd.exe."""

    fallback = ShellSpec("cmd.exe")

    def candidates(self) -> list[str]:
        return ["pwsh.exe", "powershell.exe", "cmd.exe"]

    def exists(self, candidate: str) -> bool:
        return shutil.which(candidate) is not None

    def args_for(self, candidate: str) -> tuple[str, ...]:
        return () if candidate == "cmd.exe" else ("-NoLogo",)


def locator_for(platform: str | None = None) -> ShellLocator:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return WindowsShellLocator()
    return PosixShellLocator()


def detect_shell(platform: str | None = None) -> ShellSpec:
    """Return the best available shell for ``platform`` (default: this OS).

    Never fails: every locator ends in a universally present fallback.
    """
    return locator_for(platform).detect()
