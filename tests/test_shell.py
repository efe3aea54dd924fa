"""Tests for shellbridge.pty.shell (shell discovery and dialects)."""

from __future__ import annotations

import pytest

from shellbridge.pty import shell as shell_mod
from shellbridge.pty.shell import (
    CMD_DIALECT,
    POSIX_DIALECT,
    POWERSHELL_DIALECT,
    PosixShellLocator,
    ShellSpec,
    WindowsShellLocator,
    detect_shell,
    locator_for,
)


class TestDialects:
    def test_posix_wrap(self) -> None:
        wrapped = POSIX_DIALECT.wrap("ls -la", "__SHB_DONE_abc__")
        assert wrapped == "ls -la; printf '\\n__SHB_DONE_abc__%d\\n' $?"

    def test_powershell_wrap(self) -> None:
        wrapped = POWERSHELL_DIALECT.wrap("dir", "__SHB_DONE_abc__")
        assert wrapped == 'dir; Write-Host "__SHB_DONE_abc__$LASTEXITCODE"'

    def test_cmd_wrap(self) -> None:
        wrapped = CMD_DIALECT.wrap("dir", "__SHB_DONE_abc__")
        assert wrapped == "dir & echo. & call echo __SHB_DONE_abc__%^errorlevel%"

    def test_control_bytes(self) -> None:
        assert POSIX_DIALECT.line_kill == "\x15"
        assert POSIX_DIALECT.interrupt == "\x03"
        assert POSIX_DIALECT.enter == "\r"
        assert POWERSHELL_DIALECT.line_kill == "\x1b"


class TestShellSpec:
    @pytest.mark.parametrize(
        "path,name,dialect",
        [
            ("/bin/zsh", "zsh", POSIX_DIALECT),
            ("/usr/bin/bash", "bash", POSIX_DIALECT),
            ("pwsh.exe", "pwsh", POWERSHELL_DIALECT),
            ("C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe", "powershell", POWERSHELL_DIALECT),
            ("cmd.exe", "cmd", CMD_DIALECT),
        ],
    )
    def test_name_and_dialect(self, path: str, name: str, dialect: object) -> None:
        spec = ShellSpec(path)
        assert spec.name == name
        assert spec.dialect is dialect

    def test_argv(self) -> None:
        assert ShellSpec("/bin/zsh", ("+o", "PROMPT_SP")).argv == ["/bin/zsh", "+o", "PROMPT_SP"]


class TestPosixLocator:
    def test_env_shell_first(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHELL", "/opt/fish/bin/fish")
        monkeypatch.setattr(PosixShellLocator, "exists", lambda self, p: True)
        assert detect_shell("linux") == ShellSpec("/opt/fish/bin/fish")

    def test_zsh_gets_prompt_sp_off(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SHELL", raising=False)
        monkeypatch.setattr(PosixShellLocator, "exists", lambda self, p: p == "/usr/bin/zsh")
        spec = detect_shell("linux")
        assert spec.path == "/usr/bin/zsh"
        assert spec.args == ("+o", "PROMPT_SP")

    def test_bash_when_no_zsh(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SHELL", raising=False)
        monkeypatch.setattr(PosixShellLocator, "exists", lambda self, p: p == "/bin/bash")
        assert detect_shell("darwin") == ShellSpec("/bin/bash")

    def test_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SHELL", raising=False)
        monkeypatch.setattr(PosixShellLocator, "exists", lambda self, p: False)
        assert detect_shell("linux") == ShellSpec("/bin/sh")

    def test_probe_error_skipped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def exists(self: PosixShellLocator, path: str) -> bool:
            if path == "/bin/zsh":
                raise PermissionError(path)
            return path == "/bin/bash"

        monkeypatch.delenv("SHELL", raising=False)
        monkeypatch.setattr(PosixShellLocator, "exists", exists)
        assert detect_shell("linux").path == "/bin/bash"


class TestWindowsLocator:
    def test_prefers_pwsh(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(shell_mod.shutil, "which", lambda c: "C:\\x\\" + c)
        spec = detect_shell("win32")
        assert spec == ShellSpec("pwsh.exe", ("-NoLogo",))
        assert spec.dialect is POWERSHELL_DIALECT

    def test_windows_powershell(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            shell_mod.shutil, "which", lambda c: c if c == "powershell.exe" else None
        )
        assert detect_shell("win32") == ShellSpec("powershell.exe", ("-NoLogo",))

    def test_cmd_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(shell_mod.shutil, "which", lambda c: None)
        spec = detect_shell("win32")
        assert spec == ShellSpec("cmd.exe")
        assert spec.dialect is CMD_DIALECT


class TestLocatorFor:
    def test_platforms(self) -> None:
        assert isinstance(locator_for("win32"), WindowsShellLocator)
        assert isinstance(locator_for("linux"), PosixShellLocator)
        assert isinstance(locator_for("darwin"), PosixShellLocator)
