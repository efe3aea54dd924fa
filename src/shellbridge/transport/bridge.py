"""Desktop bridge: the single-caller transport host.

One front-end talks to one bridge in-process. There is no session
ownership: every session's events go to the bridge's single Wire.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from shellbridge.errors import ChannelError
from shellbridge.session.service import SessionService
from shellbridge.session.wire import Wire, WireEvent
from shellbridge.transport.protocol import CallerContext, Dispatcher

logger = logging.getLogger(__name__)


class DesktopBridge:
    """Routes one caller's requests into the service and its events back out."""

    def __init__(self, service: SessionService | None = None) -> None:
        self.service = service if service is not None else SessionService()
        self.wire = Wire("desktop")
        self.dispatcher = Dispatcher(self.service, mode="local", enforce_ownership=False)
        self._ctx = CallerContext(sink=self.wire)
        self._send_lock = asyncio.Lock()

    async def invoke(self, channel: str, data: dict[str, Any] | None = None) -> Any:
        """Request/response call. Raises ``ChannelError`` and handler errors."""
        return await self.dispatcher.dispatch(channel, data, self._ctx)

    async def send(self, channel: str, data: dict[str, Any] | None = None) -> None:
        """Fire-and-forget call, applied in arrival order. Never raises."""
        async with self._send_lock:
            try:
                await self.dispatcher.dispatch(channel, data, self._ctx)
            except Exception as e:
                logger.debug("send %s failed: %s", channel, e)

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Apply one framed message; returns the invoke-response frame, if any."""
        kind = message.get("type")
        channel = message.get("channel", "")
        data = message.get("data")
        if kind == "send":
            await self.send(channel, data)
            return None
        if kind != "invoke":
            return {"type": "invoke-response", "id": message.get("id"), "error": f"Unknown message type: {kind}"}
        try:
            result = await self.invoke(channel, data)
        except Exception as e:
            if not isinstance(e, ChannelError):
                logger.error("Handler for %s failed: %s", channel, e, exc_info=True)
            return {"type": "invoke-response", "id": message.get("id"), "error": str(e)}
        return {"type": "invoke-response", "id": message.get("id"), "result": result}

    async def events(self) -> AsyncIterator[WireEvent]:
        """Yield session events until the bridge closes."""
        q = self.wire.subscribe()
        try:
            while True:
                event = await q.get()
                if event is None:
                    break
                yield event
        finally:
            self.wire.unsubscribe(q)

    # ------------------------------------------------------------------
    # Agent-facing shortcuts
    # ------------------------------------------------------------------

    async def execute(self, session_id: str, command: str) -> dict[str, Any]:
        """Run a command visibly in the terminal and capture its result."""
        return await self.service.exec_in_terminal(session_id, command)

    def write_raw(self, session_id: str, data: str) -> None:
        """Type raw input (keystrokes, answers to prompts) into the terminal."""
        self.service.write(session_id, data)

    async def close(self) -> None:
        await self.service.shutdown()
        self.wire.close()
