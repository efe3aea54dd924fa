"""Local terminal machinery: shell discovery, buffers, helpers, cwd lookup.

``LocalSession`` lives in ``shellbridge.pty.session``; it builds on the
session contract and is imported from there directly.
"""

from shellbridge.pty.buffer import HistoryBuffer
from shellbridge.pty.cwd import (
    CwdResolver,
    CwdStrategy,
    LsofCwd,
    ProcCwd,
    PromptHistoryCwd,
    parse_prompt_cwd,
    strategy_for,
)
from shellbridge.pty.display import DisplayBuffer
from shellbridge.pty.helpers import HelperProcesses, HelperResult
from shellbridge.pty.shell import (
    CMD_DIALECT,
    POSIX_DIALECT,
    POWERSHELL_DIALECT,
    PosixShellLocator,
    ShellDialect,
    ShellLocator,
    ShellSpec,
    WindowsShellLocator,
    detect_shell,
    locator_for,
)

__all__ = [
    "CMD_DIALECT",
    "POSIX_DIALECT",
    "POWERSHELL_DIALECT",
    "CwdResolver",
    "CwdStrategy",
    "DisplayBuffer",
    "HelperProcesses",
    "HelperResult",
    "HistoryBuffer",
    "LsofCwd",
    "PosixShellLocator",
    "ProcCwd",
    "PromptHistoryCwd",
    "ShellDialect",
    "ShellLocator",
    "ShellSpec",
    "WindowsShellLocator",
    "detect_shell",
    "locator_for",
    "parse_prompt_cwd",
    "strategy_for",
]
