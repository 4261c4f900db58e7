"""
Session lifecycle states.

Rules:
- This enum defines ONLY the states.
- Transitions live in SessionProtocol.
"""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """
    Lifecycle of one logical realtime connection.

    IDLE -> CONNECTING -> HANDSHAKING -> ACTIVE
    ACTIVE -> RECONNECTING -> CONNECTING ...   (transport loss)
    CONNECTING | HANDSHAKING | RECONNECTING -> CLOSED   (retries exhausted)
    any -> CLOSED   (disconnect, fatal error)
    """

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    HANDSHAKING = "HANDSHAKING"
    ACTIVE = "ACTIVE"
    RECONNECTING = "RECONNECTING"
    CLOSED = "CLOSED"
