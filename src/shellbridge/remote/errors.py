"""User-facing messages for SSH connection failures."""

from __future__ import annotations

import errno
import re
import socket

import paramiko

from shellbridge.remote.profiles import RemoteConfig


def friendly_ssh_error(exc: BaseException, config: RemoteConfig) -> str:
    """Translate a paramiko/socket failure into a message a user can act on."""
    target = config.target
    where = f"{config.host}:{config.port}"
    msg = str(exc)

    if isinstance(exc, paramiko.PasswordRequiredException):
        return f"Private key {config.private_key_path} is encrypted; a passphrase is required"

    if isinstance(exc, paramiko.AuthenticationException) or re.search(
        r"authentication (failed|methods failed)", msg, re.IGNORECASE
    ):
        if config.auth_method == "password":
            return f"Authentication failed: incorrect password for {target}"
        if config.auth_method == "key":
            return (
                f"Authentication failed: the server rejected the private key for {target}. "
                "Check that the key is authorized and the passphrase is correct."
            )
        return (
            f"Authentication failed: SSH agent has no key accepted by {config.host}. "
            "Make sure your agent has the correct key loaded."
        )

    if isinstance(exc, socket.gaierror) or re.search(
        r"getaddrinfo|Name or service not known|nodename nor servname", msg
    ):
        return f'Host not found: could not resolve "{config.host}"'

    if isinstance(exc, (socket.timeout, TimeoutError)) or re.search(
        r"timed? ?out", msg, re.IGNORECASE
    ):
        return f"Connection timed out: {where} did not respond"

    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        return f"Connection refused: {where} is not accepting SSH connections"

    if isinstance(exc, OSError):
        if exc.errno == errno.ECONNREFUSED:
            return f"Connection refused: {where} is not accepting SSH connections"
        if exc.errno == errno.EHOSTUNREACH:
            return f"Host unreachable: cannot reach {config.host}"
        if exc.errno == errno.ECONNRESET:
            return f"Connection reset by {config.host}"
        if exc.errno == errno.ENOENT and config.auth_method == "key":
            return f"Private key file not found: {config.private_key_path}"

    return msg or exc.__class__.__name__
