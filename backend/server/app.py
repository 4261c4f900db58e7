"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (RelayBridge)
- Register routes
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import observability.logger as logger
from config import AppConfig
from protocol.transport import OpenTransportFn, open_websocket
from relay.bridge import RelayBridge
from server.routes import register_routes


def create_app(
    config: Optional[AppConfig] = None,
    *,
    open_transport: OpenTransportFn = open_websocket,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations and fake upstreams
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.configure(enabled=config.enable_json_logs)

    app = FastAPI(title="Realtime Voice Relay")

    app.state.config = config
    # One bridge per process; links inside it are per client
    app.state.bridge = RelayBridge(config=config, open_transport=open_transport)

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
