# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring
"""
In-memory stand-ins for sockets and audio devices.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping

import numpy as np
from fastapi.websockets import WebSocketState
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from audio.capture import CaptureDeviceError


_END = object()
_DROP = object()


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def created(session_id: str = "sess_1") -> str:
    return json.dumps({"type": "session.created", "session": {"id": session_id}})


# ---------------------------------------------------------------------
# Upstream transport
# ---------------------------------------------------------------------

class FakeTransport:
    """Scriptable websocket client connection."""

    def __init__(self, *inbound: Any) -> None:
        self.sent: list[str | bytes] = []
        self.closed = False
        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        for message in inbound:
            self.feed(message)

    def feed(self, message: Any) -> None:
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self) -> None:
        """Abrupt loss: the next read raises."""
        self._inbox.put_nowait(_DROP)

    def end(self) -> None:
        """Clean close by the peer."""
        self._inbox.put_nowait(_END)

    async def send(self, message: str | bytes) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(message)

    async def recv(self) -> str | bytes:
        item = await self._inbox.get()
        if item is _END:
            self._inbox.put_nowait(_END)
            raise ConnectionClosedOK(None, None)
        if item is _DROP:
            raise ConnectionClosedError(None, None)
        assert isinstance(item, (str, bytes))
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:  # pylint: disable=unused-argument
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_END)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            try:
                yield await self.recv()
            except ConnectionClosedOK:
                return

    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(m) for m in self.sent]

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent_json()]


HANG = object()


class FakeOpener:
    """
    open_transport replacement.

    Each call consumes the next outcome: a FakeTransport is returned,
    an exception is raised, HANG never completes, and a zero-argument
    async callable is awaited for its result. The last outcome repeats.
    """

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, url: str, headers: Mapping[str, str]) -> Any:
        self.calls.append((url, dict(headers)))
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if callable(outcome) and not isinstance(outcome, FakeTransport):
            outcome = await outcome()
        if outcome is HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FreshTransports:
    """Opener outcome producing a new transport per call, optionally pre-fed."""

    def __init__(self, *inbound: Any) -> None:
        self._inbound = inbound
        self.made: list[FakeTransport] = []

    async def __call__(self) -> FakeTransport:
        transport = FakeTransport(*self._inbound)
        self.made.append(transport)
        return transport


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------
# Client websocket (server side of the relay)
# ---------------------------------------------------------------------

class FakeClientSocket:
    """Starlette WebSocket look-alike, already accepted."""

    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[str | bytes] = []
        self.closed = False
        self._inbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def push_text(self, text: str) -> None:
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def push_json(self, payload: Any) -> None:
        self.push_text(json.dumps(payload))

    def push_bytes(self, data: bytes) -> None:
        self._inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self) -> None:
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self) -> dict[str, Any]:
        return await self._inbox.get()

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("websocket closed")
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise RuntimeError("websocket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:  # pylint: disable=unused-argument
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED

    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(m) for m in self.sent if isinstance(m, str)]


# ---------------------------------------------------------------------
# Audio devices
# ---------------------------------------------------------------------

class FakeCaptureDevice:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.callback: Callable[[np.ndarray], None] | None = None
        self.opened = 0
        self.closed = 0
        self.block_size: int | None = None

    def open(self, *, sample_rate: int, channels: int, block_size: int, callback: Callable[[np.ndarray], None]) -> None:  # pylint: disable=unused-argument
        if self.fail:
            raise CaptureDeviceError("no input device")
        self.opened += 1
        self.block_size = block_size
        self.callback = callback

    def close(self) -> None:
        self.closed += 1
        self.callback = None


class FakeOutputDevice:
    """
    Records rendered chunks.

    With a gate, play() blocks until the gate is set (per call).
    """

    def __init__(self, *, gate: asyncio.Event | None = None, delay: float = 0.0) -> None:
        self.gate = gate
        self.delay = delay
        self.played: list[np.ndarray] = []
        self.stopped = 0
        self.active = 0
        self.max_active = 0

    async def play(self, samples: np.ndarray) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            self.played.append(samples)
        finally:
            self.active -= 1

    def stop(self) -> None:
        self.stopped += 1

