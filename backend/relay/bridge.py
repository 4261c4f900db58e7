"""
RelayBridge: one upstream provider connection per client connection.

Responsibilities:
- Open the upstream socket with the bearer credential and beta header
- Configure the upstream session once it exists (format, voice, greeting)
- Normalize client audio/control frames; forward everything else verbatim
- Forward every upstream frame to the client verbatim
- Tear both sides down together

Non-responsibilities:
- Retrying the upstream connection (the client's SessionProtocol retries)
- Interpreting responses

Each link is independent; the bridge itself only holds the links table and
read-only configuration.
"""

from __future__ import annotations

import asyncio
import json
from typing import Iterable

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from config import AppConfig
from observability.logger import log_event, now_ms
from observability.metrics import timed
from protocol.messages import (
    InboundType,
    MalformedMessage,
    OutboundMessage,
    SessionCreated,
    conversation_item_create,
    normalize_client_text,
    parse_inbound,
    response_create,
    session_update,
    wrap_raw_audio,
)
from protocol.transport import TRANSPORT_ERRORS, OpenTransportFn, open_websocket, rejected_for_auth
from relay.link import RelayLink


# Raised by the client socket once the browser is gone.
CLIENT_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)


def error_frame(message: str, *, error_type: str = "relay_error") -> str:
    """Error message in the provider's own shape so clients handle both alike."""
    return json.dumps({"type": "error", "error": {"type": error_type, "message": message}})


class RelayBridge:
    """
    Accepts client sockets and bridges each to its own upstream socket.

    Usage (FastAPI):
        @app.websocket("/ws")
        async def ws_endpoint(ws: WebSocket):
            await ws.accept()
            await bridge.serve(ws)
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        open_transport: OpenTransportFn = open_websocket,
    ) -> None:
        self._config = config
        self._open_transport = open_transport
        self._policy = config.connection_policy()
        self._settings = config.session_settings()
        self.links: dict[str, RelayLink] = {}

    @property
    def active_links(self) -> int:
        return len(self.links)

    # =========================================================================
    # Link lifecycle
    # =========================================================================

    async def serve(self, ws: WebSocket) -> None:
        """Run one link until either side ends. Returns after teardown."""
        link = RelayLink(client=ws)
        self.links[link.link_id] = link
        log_event({"event_type": "RELAY_LINK_OPENED", "active_links": self.active_links, **link.log_context()})

        try:
            if not await self._open_upstream(link):
                return

            link.tasks = [
                asyncio.create_task(self._pump_upstream(link)),
                asyncio.create_task(self._pump_client(link)),
            ]
            done, _ = await asyncio.wait(link.tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    exc = task.exception()
                    link.begin_close("pump_failed")
                    log_event({
                        "event_type": "RELAY_PUMP_FAILED",
                        "exception": type(exc).__name__,
                        "message": str(exc),
                        **link.log_context(),
                    })
        finally:
            await self._teardown(link)

    async def _open_upstream(self, link: RelayLink) -> bool:
        try:
            with timed("upstream_open", link_id=link.link_id):
                link.upstream = await asyncio.wait_for(
                    self._open_transport(
                        self._config.upstream_endpoint(),
                        self._config.upstream_headers(),
                    ),
                    timeout=self._policy.connect_timeout_s,
                )
        except asyncio.TimeoutError:
            await self._reject(link, "upstream_timeout", "Upstream connection timed out")
            return False
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if rejected_for_auth(exc):
                await self._reject(
                    link,
                    "upstream_auth_failed",
                    "Authentication failed",
                    error_type="authentication_error",
                )
            else:
                await self._reject(link, "upstream_failed", f"Failed to connect to upstream: {exc}")
            return False

        log_event({"event_type": "RELAY_UPSTREAM_OPENED", **link.log_context()})
        return True

    async def _reject(self, link: RelayLink, reason: str, message: str, *, error_type: str = "relay_error") -> None:
        log_event({"event_type": "RELAY_UPSTREAM_FAILED", "reason": reason, "message": message, **link.log_context()})
        await self._to_client(link, error_frame(message, error_type=error_type))
        link.begin_close(reason)

    async def _teardown(self, link: RelayLink) -> None:
        """Close both sides of one link. Idempotent."""
        if link.closed:
            return
        link.begin_close("server_shutdown")
        link.closed = True
        self.links.pop(link.link_id, None)

        current = asyncio.current_task()
        others = [t for t in link.tasks if t is not current and not t.done()]
        for task in others:
            task.cancel()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

        if link.upstream is not None:
            try:
                await link.upstream.close()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({"event_type": "RELAY_UPSTREAM_CLOSE_FAILED", "message": str(exc), **link.log_context()})

        client = link.client
        if (
            client.client_state is not WebSocketState.DISCONNECTED
            and client.application_state is not WebSocketState.DISCONNECTED
        ):
            try:
                await client.close()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({"event_type": "RELAY_CLIENT_CLOSE_FAILED", "message": str(exc), **link.log_context()})

        log_event({
            "event_type": "RELAY_LINK_CLOSED",
            "reason": link.close_reason,
            "forwarded_upstream": link.forwarded_upstream,
            "forwarded_client": link.forwarded_client,
            "dropped": link.dropped,
            "duration_ms": now_ms() - link.opened_at_ms,
            "active_links": self.active_links,
            **link.log_context(),
        })

    # =========================================================================
    # Upstream -> client
    # =========================================================================

    async def _pump_upstream(self, link: RelayLink) -> None:
        upstream = link.upstream
        assert upstream is not None

        try:
            try:
                with timed("session_handshake", link_id=link.link_id) as extra:
                    await asyncio.wait_for(
                        self._until_created(link),
                        timeout=self._policy.handshake_timeout_s,
                    )
                    extra["session_id"] = link.session_id
            except asyncio.TimeoutError:
                await self._to_client(link, error_frame("Upstream session was not created in time"))
                link.begin_close("handshake_timeout")
                return

            async for raw in upstream:
                if link.closing:
                    return
                await self._to_client(link, raw)
        except TRANSPORT_ERRORS as exc:
            log_event({"event_type": "RELAY_UPSTREAM_LOST", "message": str(exc), **link.log_context()})
        finally:
            link.begin_close("upstream_closed")

    async def _until_created(self, link: RelayLink) -> None:
        """Forward frames until session.created, then configure the session."""
        upstream = link.upstream
        assert upstream is not None

        while True:
            raw = await upstream.recv()
            await self._to_client(link, raw)
            try:
                msg = parse_inbound(raw)
            except MalformedMessage:
                continue
            if msg.kind is InboundType.SESSION_CREATED:
                assert isinstance(msg, SessionCreated)
                await self._on_session_created(link, msg.session_id)
                return

    async def _on_session_created(self, link: RelayLink, session_id: str | None) -> None:
        link.session_id = session_id
        upstream = link.upstream
        assert upstream is not None

        async with link.lock:
            if link.closing:
                return
            for message in self._session_setup():
                await upstream.send(message.to_json())

            flushed = 0
            while link.pending:
                await upstream.send(link.pending.popleft())
                flushed += 1
            link.forwarded_upstream += flushed
            link.passthrough = True

        log_event({"event_type": "RELAY_SESSION_CONFIGURED", "pending_flushed": flushed, **link.log_context()})

    def _session_setup(self) -> Iterable[OutboundMessage]:
        yield session_update(self._settings)
        if self._config.greeting:
            yield conversation_item_create(self._config.greeting)
        yield response_create(
            self._settings.modalities,
            max_output_tokens=self._settings.max_response_tokens,
        )

    async def _to_client(self, link: RelayLink, frame: str | bytes) -> None:
        if link.closing:
            return
        try:
            if isinstance(frame, bytes):
                await link.client.send_bytes(frame)
            else:
                await link.client.send_text(frame)
        except CLIENT_ERRORS as exc:
            log_event({"event_type": "RELAY_CLIENT_SEND_FAILED", "message": str(exc), **link.log_context()})
            link.begin_close("client_gone")
            return
        link.forwarded_client += 1

    # =========================================================================
    # Client -> upstream
    # =========================================================================

    async def _pump_client(self, link: RelayLink) -> None:
        try:
            while not link.closing:
                message = await link.client.receive()
                if message["type"] == "websocket.disconnect":
                    link.begin_close("client_disconnect")
                    return

                text = message.get("text")
                data = message.get("bytes")
                if text is not None:
                    try:
                        frames = normalize_client_text(text)
                    except MalformedMessage as exc:
                        log_event({"event_type": "RELAY_CLIENT_MESSAGE_INVALID", "message": str(exc), **link.log_context()})
                        await self._to_client(link, error_frame("Invalid JSON message", error_type="invalid_request_error"))
                        continue
                elif data is not None:
                    frames = wrap_raw_audio(data)
                else:
                    continue

                await self._to_upstream(link, frames)
        except CLIENT_ERRORS as exc:
            log_event({"event_type": "RELAY_CLIENT_LOST", "message": str(exc), **link.log_context()})
        finally:
            link.begin_close("client_closed")

    async def _to_upstream(self, link: RelayLink, frames: list[str]) -> None:
        async with link.lock:
            if link.closing:
                return

            if not link.passthrough:
                for frame in frames:
                    if len(link.pending) >= self._config.pending_queue_max:
                        link.dropped += 1
                        log_event({"event_type": "RELAY_PENDING_DROPPED", "dropped": link.dropped, **link.log_context()})
                        continue
                    link.pending.append(frame)
                return

            upstream = link.upstream
            assert upstream is not None
            try:
                for frame in frames:
                    await upstream.send(frame)
                    link.forwarded_upstream += 1
            except TRANSPORT_ERRORS as exc:
                log_event({"event_type": "RELAY_UPSTREAM_SEND_FAILED", "message": str(exc), **link.log_context()})
                link.begin_close("upstream_closed")
