"""SSH connection settings and the on-disk profile store."""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Literal

import aiofiles
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

AuthMethod = Literal["password", "key", "agent"]


class RemoteConfig(BaseModel):
    """Parameters of one SSH connection request."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str = ""
    host: str
    port: int = 22
    username: str
    auth_method: AuthMethod = Field(default="password", alias="authMethod")
    private_key_path: str | None = Field(default=None, alias="privateKeyPath")
    password: str | None = None
    passphrase: str | None = None
    save_credentials: bool = Field(default=False, alias="saveCredentials")
    fingerprint: str | None = None
    cols: int = 80
    rows: int = 30
    session_id: str | None = Field(default=None, alias="sessionId")

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}"

    def key_path(self) -> str | None:
        if not self.private_key_path:
            return None
        return os.path.expanduser(self.private_key_path)

    def __repr__(self) -> str:
        # Never leak secrets into logs
        return (
            f"RemoteConfig(id={self.id!r}, target={self.target!r}, "
            f"port={self.port}, auth_method={self.auth_method!r})"
        )


class RemoteProfile(BaseModel):
    """A saved connection. Secrets are present only when the user opted in."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    host: str
    port: int = 22
    username: str
    auth_method: AuthMethod = Field(default="password", alias="authMethod")
    private_key_path: str | None = Field(default=None, alias="privateKeyPath")
    save_credentials: bool = Field(default=False, alias="saveCredentials")
    saved_password: str | None = Field(default=None, alias="savedPassword")
    saved_passphrase: str | None = Field(default=None, alias="savedPassphrase")
    fingerprint: str | None = None
    last_connected: int | None = Field(default=None, alias="lastConnected")

    @classmethod
    def from_config(cls, config: RemoteConfig) -> RemoteProfile:
        keep = config.save_credentials
        return cls(
            id=config.id,
            name=config.name or config.target,
            host=config.host,
            port=config.port,
            username=config.username,
            auth_method=config.auth_method,
            private_key_path=config.private_key_path,
            save_credentials=config.save_credentials,
            saved_password=config.password if keep else None,
            saved_passphrase=config.passphrase if keep else None,
            fingerprint=config.fingerprint,
            last_connected=int(time.time() * 1000),
        )


class ProfileStore:
    """JSON file of ``RemoteProfile`` records."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(os.path.expanduser(str(path)))

    async def read(self) -> list[RemoteProfile]:
        if not self.path.exists():
            return []
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read profiles from %s: %s", self.path, e)
            return []
        profiles = []
        for item in data if isinstance(data, list) else []:
            try:
                profiles.append(RemoteProfile.model_validate(item))
            except ValueError:
                logger.warning("Skipping malformed profile in %s", self.path)
        return profiles

    async def write(self, profiles: list[RemoteProfile]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [p.model_dump(by_alias=True, exclude_none=True) for p in profiles]
        async with aiofiles.open(self.path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2))
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass

    async def upsert(self, profile: RemoteProfile, match_target: bool = False) -> RemoteProfile:
        """Replace the profile with the same id, or append it.

        With ``match_target`` an existing profile for the same host, port and
        username is replaced instead, keeping its id.
        """
        profiles = await self.read()
        for i, existing in enumerate(profiles):
            same_target = (existing.host, existing.port, existing.username) == (
                profile.host,
                profile.port,
                profile.username,
            )
            if existing.id == profile.id or (match_target and same_target):
                profile = profile.model_copy(update={"id": existing.id})
                profiles[i] = profile
                break
        else:
            profiles.append(profile)
        await self.write(profiles)
        return profile
