"""Transport hosts: the desktop bridge and the multi-client WebSocket server."""

from shellbridge.transport.bridge import DesktopBridge
from shellbridge.transport.protocol import CallerContext, Channel, Dispatcher
from shellbridge.transport.server import ClientConnection, ClientHub, create_app, serve

__all__ = [
    "CallerContext",
    "Channel",
    "ClientConnection",
    "ClientHub",
    "DesktopBridge",
    "Dispatcher",
    "create_app",
    "serve",
]
