"""SSH sessions, connection errors and saved connection profiles."""

from shellbridge.remote.errors import friendly_ssh_error
from shellbridge.remote.profiles import AuthMethod, ProfileStore, RemoteConfig, RemoteProfile
from shellbridge.remote.session import RemoteSession, connect_kwargs, probe_connection

__all__ = [
    "AuthMethod",
    "ProfileStore",
    "RemoteConfig",
    "RemoteProfile",
    "RemoteSession",
    "connect_kwargs",
    "friendly_ssh_error",
    "probe_connection",
]
