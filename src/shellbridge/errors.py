"""Exception taxonomy shared by the session layer and the transport hosts."""

from __future__ import annotations


class ShellBridgeError(Exception):
    """Base class for all shellbridge errors."""


class SessionNotFoundError(ShellBridgeError):
    """A session-scoped operation named an id that is not registered."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionBusyError(ShellBridgeError):
    """A terminal exec is already in flight on this session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session busy: a command is already running in terminal {session_id}"
        )
        self.session_id = session_id


class RemoteConnectionError(ShellBridgeError):
    """SSH connection could not be established (message is user-facing)."""


class ChannelError(ShellBridgeError):
    """Unknown channel, invalid parameters, or a channel blocked by server mode."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(message)
        self.channel = channel
