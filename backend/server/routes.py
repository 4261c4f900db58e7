"""
Route registration for the relay service.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Hand each accepted WebSocket to the RelayBridge
- Pull dependencies from app.state
"""

from __future__ import annotations

from fastapi import FastAPI, WebSocket

from observability.logger import log_event
from relay.bridge import RelayBridge


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, object]: # pyright: ignore[reportUnusedFunction]
        bridge: RelayBridge = app.state.bridge
        return {"status": "ok", "links": bridge.active_links}

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()
        bridge: RelayBridge = app.state.bridge

        try:
            await bridge.serve(ws)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
