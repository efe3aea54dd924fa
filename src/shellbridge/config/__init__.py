"""Configuration: Pydantic models for shellbridge settings."""

from __future__ import annotations

import json
import os
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ExecConfig(BaseModel):
    """Sentinel exec protocol timing and output limits."""

    stall_timeout: float = Field(
        default=3.0,
        description="Seconds of silence (after some output) before a command is treated as waiting for input",
    )
    hard_timeout: float = Field(
        default=30.0, description="Upper bound on a single in-terminal exec"
    )
    preempt_settle: float = Field(
        default=0.5,
        description="Delay after interrupting a busy session before injecting the next command",
    )
    max_output_chars: int = Field(default=8000)
    keep_head_chars: int = Field(default=4000)
    keep_tail_chars: int = Field(default=4000)
    sentinel_prefix: str = Field(default="__SHB_DONE_")
    nonce_length: int = Field(default=8)


class DisplayConfig(BaseModel):
    """Display buffering while an exec is intercepting a session's output."""

    debounce: float = Field(default=0.008)
    flush_grace: float = Field(default=0.015)


class HistoryConfig(BaseModel):
    """Per-session raw output history."""

    max_chars: int = Field(default=100_000)
    keep_chars: int = Field(
        default=80_000, description="Suffix retained when max_chars is reached"
    )
    read_lines: int = Field(default=100, description="Default line count for readHistory")


class TerminalConfig(BaseModel):
    """Local terminal defaults and helper-subprocess limits."""

    cols: int = Field(default=80)
    rows: int = Field(default=30)
    term: str = Field(default="xterm-256color")
    cwd_cache_ttl: float = Field(default=2.0)
    command_timeout: float = Field(
        default=30.0, description="Timeout for non-interactive session.exec"
    )
    helper_timeout: float = Field(
        default=5.0, description="Timeout for completion / command-check helpers"
    )
    max_completions: int = Field(default=15)
    max_sessions: int = Field(default=32)


class RemoteSettings(BaseModel):
    """SSH adapter settings."""

    connect_timeout: float = Field(default=10.0)
    keepalive_interval: int = Field(default=15)
    exec_timeout: float = Field(
        default=5.0, description="Timeout for one-shot lookups (pwd, uname, compgen)"
    )
    profiles_path: str = Field(default="~/.shellbridge/remote-profiles.json")


class ServerConfig(BaseModel):
    """Networked multi-client host."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3888)
    mode: Literal["local", "gateway"] = Field(
        default="local",
        description="'gateway' exposes SSH sessions only, never the server's own shell",
    )
    reconnect_grace: float = Field(
        default=5.0,
        description="Seconds a disconnected client's sessions survive awaiting reconnect",
    )


class ShellBridgeConfig(BaseModel):
    """Top-level shellbridge configuration."""

    exec: ExecConfig = Field(default_factory=ExecConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> ShellBridgeConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SHELLBRIDGE_HOST            - Bind address for ``serve``
            SHELLBRIDGE_PORT            - Port for ``serve``
            SHELLBRIDGE_MODE            - Server mode (local/gateway)
            SHELLBRIDGE_STALL_TIMEOUT   - Exec stall timeout in seconds
            SHELLBRIDGE_HARD_TIMEOUT    - Exec hard timeout in seconds
            SHELLBRIDGE_PROFILES_PATH   - Where SSH profiles are persisted
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        server = config_data.get("server", {})
        env_host = os.environ.get("SHELLBRIDGE_HOST")
        if env_host:
            server["host"] = env_host
        env_port = os.environ.get("SHELLBRIDGE_PORT")
        if env_port:
            server["port"] = int(env_port)
        env_mode = os.environ.get("SHELLBRIDGE_MODE")
        if env_mode:
            server["mode"] = env_mode.lower()
        if server:
            config_data["server"] = server

        exec_cfg = config_data.get("exec", {})
        env_stall = os.environ.get("SHELLBRIDGE_STALL_TIMEOUT")
        if env_stall:
            exec_cfg["stall_timeout"] = float(env_stall)
        env_hard = os.environ.get("SHELLBRIDGE_HARD_TIMEOUT")
        if env_hard:
            exec_cfg["hard_timeout"] = float(env_hard)
        if exec_cfg:
            config_data["exec"] = exec_cfg

        env_profiles = os.environ.get("SHELLBRIDGE_PROFILES_PATH")
        if env_profiles:
            config_data.setdefault("remote", {})["profiles_path"] = env_profiles

        return cls.model_validate(config_data)
