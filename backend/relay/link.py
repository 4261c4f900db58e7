"""
RelayLink: everything the relay owns for one client connection.

One aggregate per accepted client, kept in RelayBridge.links. Teardown
operates on exactly one of these and touches nothing else.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional
from uuid import uuid4

from fastapi import WebSocket

from observability.logger import now_ms
from protocol.transport import Transport


def new_link_id() -> str:
    return f"link_{uuid4().hex[:12]}"


@dataclass
class RelayLink:
    """
    Pairs one client socket with one upstream socket.

    closing:
        Set by whichever side ends first. Nothing is forwarded afterwards.
    closed:
        Set once teardown has run.
    pending:
        Client frames received before the upstream session exists.
    lock:
        Serializes writes to the upstream socket so the injected
        configuration, the pending flush and live frames never interleave.
    """

    client: WebSocket
    link_id: str = field(default_factory=new_link_id)
    upstream: Optional[Transport] = None
    session_id: str | None = None
    passthrough: bool = False
    pending: Deque[str] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closing: bool = False
    closed: bool = False
    close_reason: str | None = None
    forwarded_upstream: int = 0
    forwarded_client: int = 0
    dropped: int = 0
    tasks: List[asyncio.Task] = field(default_factory=list)
    opened_at_ms: int = field(default_factory=now_ms)

    def begin_close(self, reason: str) -> None:
        """First caller wins; later reasons are ignored."""
        if self.closing:
            return
        self.closing = True
        self.close_reason = reason

    def log_context(self) -> dict[str, Any]:
        return {
            "link_id": self.link_id,
            "session_id": self.session_id,
            "passthrough": self.passthrough,
        }
