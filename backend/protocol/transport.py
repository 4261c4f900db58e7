"""
Websocket client transport shared by the session protocol and the relay.

The rest of the code depends only on the Transport protocol below, so
tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Mapping, Protocol

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from constants import AUTH_HTTP_STATUSES, WS_MAX_MESSAGE_BYTES


class Transport(Protocol):
    """Subset of websockets' ClientConnection used by this project."""

    async def send(self, message: str | bytes) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


OpenTransportFn = Callable[[str, Mapping[str, str]], Awaitable[Transport]]

# Raised by send/recv when the peer goes away.
TRANSPORT_ERRORS = (ConnectionClosed, OSError)


async def open_websocket(url: str, headers: Mapping[str, str]) -> Transport:
    """
    Open a client websocket with extra upgrade headers.

    Timeouts are applied by the caller so that open and handshake budgets
    stay independent; the library's own open_timeout is disabled.

    Raises:
        OSError / websockets.exceptions.WebSocketException on failure.
    """
    return await ws_connect(
        url,
        additional_headers=dict(headers),
        max_size=WS_MAX_MESSAGE_BYTES,
        open_timeout=None,
        ping_interval=20,
    )


def rejected_for_auth(exc: BaseException) -> bool:
    """True if the websocket upgrade was refused with 401/403."""
    if isinstance(exc, InvalidStatus):
        return exc.response.status_code in AUTH_HTTP_STATUSES
    return False
