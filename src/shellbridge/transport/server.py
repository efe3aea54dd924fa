"""Networked multi-client host: FastAPI WebSocket server.

Each WebSocket connection is a client with its own id and Wire. Sessions a
client creates or connects are owned by it: only it may drive them, and
they are closed when it goes away. A client that reconnects with
``?client_id=<id>`` within the grace period keeps its sessions, which are
re-pointed at the new socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from shellbridge.config import ShellBridgeConfig
from shellbridge.errors import ChannelError
from shellbridge.session.service import SessionService
from shellbridge.session.wire import Wire
from shellbridge.transport.protocol import CallerContext, Dispatcher

logger = logging.getLogger(__name__)


class ClientConnection:
    """One connected WebSocket client."""

    def __init__(self, client_id: str, websocket: WebSocket) -> None:
        self.client_id = client_id
        self.websocket = websocket
        self.wire = Wire(f"client {client_id}")
        self.ctx = CallerContext(sink=self.wire, client_id=client_id)
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._pump: asyncio.Task | None = None

    async def send_json(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(message)

    def start_pump(self) -> None:
        """Forward this client's wire events to its socket."""
        q = self.wire.subscribe()

        async def pump() -> None:
            try:
                while True:
                    event = await q.get()
                    if event is None:
                        break
                    try:
                        await self.send_json(event.to_message())
                    except Exception as e:
                        logger.debug("Dropping event for client %s: %s", self.client_id, e)
                        break
            finally:
                self.wire.unsubscribe(q)

        self._pump = asyncio.create_task(pump())

    def spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        self.wire.close()
        for task in list(self._tasks):
            task.cancel()
        if self._pump is not None:
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump


class ClientHub:
    """Tracks connected clients and the delayed cleanup of departed ones."""

    def __init__(self, service: SessionService, reconnect_grace: float = 5.0) -> None:
        self.service = service
        self.reconnect_grace = reconnect_grace
        self._clients: dict[str, ClientConnection] = {}
        self._cleanups: dict[str, asyncio.TimerHandle] = {}

    def attach(self, websocket: WebSocket, requested_id: str | None) -> ClientConnection:
        client_id = requested_id or uuid.uuid4().hex
        pending = self._cleanups.pop(client_id, None)
        if pending is not None:
            pending.cancel()
        conn = ClientConnection(client_id, websocket)
        self._clients[client_id] = conn
        if requested_id:
            self.service.registry.rebind_owner(client_id, conn.wire)
        logger.info("Client %s connected", client_id)
        return conn

    def detach(self, conn: ClientConnection) -> None:
        if self._clients.get(conn.client_id) is conn:
            del self._clients[conn.client_id]
        logger.info("Client %s disconnected", conn.client_id)
        if self.reconnect_grace <= 0:
            self._cleanup(conn.client_id)
            return
        loop = asyncio.get_running_loop()
        self._cleanups[conn.client_id] = loop.call_later(
            self.reconnect_grace, self._cleanup, conn.client_id
        )

    def _cleanup(self, client_id: str) -> None:
        self._cleanups.pop(client_id, None)
        if client_id in self._clients:
            # Reconnected in the meantime
            return
        closed = self.service.registry.close_owned_by(client_id)
        if closed:
            logger.info("Closed %d session(s) of client %s", len(closed), client_id)

    def client_count(self) -> int:
        return len(self._clients)

    def cancel_cleanups(self) -> None:
        for handle in self._cleanups.values():
            handle.cancel()
        self._cleanups.clear()


async def _handle_invoke(
    conn: ClientConnection, dispatcher: Dispatcher, message: dict[str, Any]
) -> None:
    msg_id = message.get("id")
    channel = message.get("channel", "")
    try:
        result = await dispatcher.dispatch(channel, message.get("data"), conn.ctx)
        response = {"type": "invoke-response", "id": msg_id, "result": result}
    except asyncio.CancelledError:
        raise
    except Exception as e:
        if not isinstance(e, ChannelError):
            logger.error("Handler for %s failed: %s", channel, e, exc_info=True)
        response = {"type": "invoke-response", "id": msg_id, "error": str(e)}
    try:
        await conn.send_json(response)
    except Exception as e:
        logger.debug("Could not deliver response to %s: %s", conn.client_id, e)


def create_app(
    config: ShellBridgeConfig | None = None,
    service: SessionService | None = None,
) -> FastAPI:
    """Build the FastAPI app serving ``/ws`` and ``/health``."""
    if config is None:
        config = service.config if service is not None else ShellBridgeConfig()
    if service is None:
        service = SessionService(config=config)
    mode = config.server.mode
    dispatcher = Dispatcher(service, mode=mode, enforce_ownership=True)
    hub = ClientHub(service, reconnect_grace=config.server.reconnect_grace)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("shellbridge server ready (mode=%s)", mode)
        yield
        hub.cancel_cleanups()
        await service.shutdown()

    app = FastAPI(title="shellbridge", lifespan=lifespan)
    app.state.service = service
    app.state.hub = hub
    app.state.dispatcher = dispatcher

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "mode": mode,
            "clients": hub.client_count(),
            "sessions": len(service.registry),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        conn = hub.attach(websocket, websocket.query_params.get("client_id"))
        conn.start_pump()
        try:
            await conn.send_json({"type": "mode", "mode": mode, "client_id": conn.client_id})
            while True:
                message = await websocket.receive_json()
                if not isinstance(message, dict):
                    continue
                kind = message.get("type")
                if kind == "invoke":
                    # Concurrent, so a long execInTerminal never blocks writes
                    conn.spawn(_handle_invoke(conn, dispatcher, message))
                elif kind == "send":
                    try:
                        await dispatcher.dispatch(
                            message.get("channel", ""), message.get("data"), conn.ctx
                        )
                    except Exception as e:
                        logger.debug("send from %s failed: %s", conn.client_id, e)
                else:
                    logger.debug("Ignoring message type %r from %s", kind, conn.client_id)
        except WebSocketDisconnect:
            pass
        finally:
            await conn.close()
            hub.detach(conn)

    return app


def serve(config: ShellBridgeConfig) -> None:
    """Run the server under uvicorn (blocking)."""
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
