"""API module for HTTP routes, WebSocket handlers and the event-bus transport.

This module exposes the FastAPI routers for the batching backend.
"""

from api.routes import router
from api.transport import EventBusTransport
from api.websocket import websocket_router

__all__ = ["EventBusTransport", "router", "websocket_router"]
