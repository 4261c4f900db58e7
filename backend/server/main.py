"""
Relay service entry point.

    realtime-relay            # host/port from RELAY_HOST / PORT
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from config import AppConfig


def main() -> None:
    load_dotenv()
    config = AppConfig.load_from_env()

    uvicorn.run(
        "server.asgi:app",
        host=config.relay_host,
        port=config.relay_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
