"""
SessionProtocol: one logical realtime connection.

Responsibilities:
- Own the session state machine (IDLE -> CONNECTING -> HANDSHAKING -> ACTIVE)
- Apply independent connect and handshake timeouts
- Queue outbound messages until ACTIVE, then flush them in order
- Retry with a fixed delay, bounded by the connection policy
- Dispatch inbound messages to the owner's callbacks

Non-responsibilities:
- Audio capture or rendering
- Deciding what the owner does with a fatal error
- Transport details (see protocol.transport)

Concurrency:
- All methods run on one event loop
- Overlapping connect() calls share the in-flight attempt
- A generation counter invalidates work belonging to a closed transport
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional

from audio.frames import AudioFrame, InboundChunk
from constants import DEFAULT_PENDING_QUEUE_MAX
from observability.logger import log_event
from observability.metrics import timed
from protocol.messages import (
    AudioCommitted,
    AudioDelta,
    ErrorMessage,
    InboundMessage,
    InboundType,
    MalformedMessage,
    OutboundMessage,
    SessionCreated,
    SessionSettings,
    TextDelta,
    TranscriptionCompleted,
    UnknownMessage,
    audio_append,
    audio_commit,
    parse_inbound,
    response_create,
    session_update,
)
from protocol.transport import (
    TRANSPORT_ERRORS,
    OpenTransportFn,
    Transport,
    open_websocket,
    rejected_for_auth,
)
from session.errors import (
    AuthenticationFailed,
    ConnectionFailed,
    ConnectionTimeout,
    HandshakeTimeout,
    RealtimeError,
    SessionClosedError,
    TransportError,
    UpstreamError,
)
from session.realtime_session import RealtimeSession
from session.retry import (
    ConnectionPolicy,
    FailureType,
    next_attempt,
    reset_attempt,
    retry_delay_s,
    should_retry,
)
from session.state import SessionState


TextFn = Callable[[str], None]
AudioFn = Callable[[InboundChunk], None]
TranscriptFn = Callable[[str], None]
ErrorFn = Callable[[RealtimeError], None]
StateChangeFn = Callable[[SessionState, SessionState], None]
SleepFn = Callable[[float], Awaitable[Any]]


_FAILURE_TYPES: dict[type, FailureType] = {
    ConnectionTimeout: FailureType.CONNECT_TIMEOUT,
    HandshakeTimeout: FailureType.HANDSHAKE_TIMEOUT,
    TransportError: FailureType.TRANSPORT_ERROR,
    AuthenticationFailed: FailureType.AUTH_FAILED,
}


class SessionProtocol:
    """
    Handshake-gated send queue with bounded retry.

    Usage:
        proto = SessionProtocol(url=..., headers=..., policy=..., settings=...,
                                on_audio=playback.enqueue)
        await proto.connect()
        await proto.send_audio(frame)
        await proto.disconnect()
    """

    def __init__(
        self,
        *,
        url: str,
        headers: Mapping[str, str],
        policy: ConnectionPolicy,
        settings: SessionSettings,
        on_text: Optional[TextFn] = None,
        on_audio: Optional[AudioFn] = None,
        on_transcript: Optional[TranscriptFn] = None,
        on_error: Optional[ErrorFn] = None,
        on_state_change: Optional[StateChangeFn] = None,
        open_transport: OpenTransportFn = open_websocket,
        pending_max: int = DEFAULT_PENDING_QUEUE_MAX,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._url = url
        self._headers = dict(headers)
        self._policy = policy
        self._settings = settings
        self._on_text = on_text
        self._on_audio = on_audio
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._on_state_change = on_state_change
        self._open_transport = open_transport
        self._pending_max = pending_max
        self._sleep = sleep

        self._session = RealtimeSession(max_pending=pending_max)
        self._transport: Optional[Transport] = None
        self._generation = 0
        self._flushing = False
        self._connect_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None

        # Every inbound variant has an entry; ignoring is explicit.
        self._handlers: dict[InboundType, Callable[[Any], None]] = {
            InboundType.SESSION_CREATED: self._handle_session_created,
            InboundType.SESSION_UPDATED: self._ignore,
            InboundType.TEXT_DELTA: self._handle_text_delta,
            InboundType.AUDIO_DELTA: self._handle_audio_delta,
            InboundType.AUDIO_COMMITTED: self._handle_transcript,
            InboundType.TRANSCRIPTION_COMPLETED: self._handle_transcript,
            InboundType.ERROR: self._handle_error_message,
            InboundType.UNKNOWN: self._handle_unknown,
        }

    # -------------------------
    # Introspection
    # -------------------------

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def session_id(self) -> str | None:
        return self._session.session_id

    @property
    def retry_count(self) -> int:
        return self._session.retry_count

    @property
    def pending_count(self) -> int:
        return len(self._session.pending)

    @property
    def session(self) -> RealtimeSession:
        return self._session

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self) -> None:
        """
        Connect and complete the handshake.

        Overlapping calls wait on the same attempt. A call after CLOSED
        starts over with a fresh session.

        Raises:
            ConnectionFailed: retry budget exhausted
            AuthenticationFailed: credential rejected
        """
        if self._session.state is SessionState.ACTIVE:
            return

        task = self._connect_task
        if task is None or task.done():
            if self._session.state is SessionState.CLOSED:
                self._session = RealtimeSession(max_pending=self._pending_max)
            task = self._spawn(self._run_connect(after_loss=False))
            self._connect_task = task

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # disconnect() cancelled the attempt; the caller is not cancelled
            if task.cancelled():
                return
            raise

    async def send(self, message: OutboundMessage) -> bool:
        """
        Transmit now if ACTIVE, otherwise queue.

        Returns:
            True once transmitted or queued
            False if the pending queue was full and the message was dropped

        Raises:
            SessionClosedError if the session is CLOSED
        """
        if self._session.state is SessionState.CLOSED:
            raise SessionClosedError("session is closed")

        transport = self._transport
        if (
            self._session.state is SessionState.ACTIVE
            and not self._flushing
            and not self._session.pending
            and transport is not None
        ):
            try:
                await transport.send(message.to_json())
                return True
            except TRANSPORT_ERRORS as exc:
                log_event({
                    "event_type": "SESSION_SEND_FAILED",
                    "message_type": message.type.value,
                    "error": str(exc),
                    **self._session.log_context(),
                })
                # keep it for the next session; the receive loop handles the loss

        return self._enqueue(message)

    async def send_audio(self, frame: AudioFrame) -> bool:
        return await self.send(audio_append(frame.pcm_bytes))

    async def commit_audio(self) -> bool:
        return await self.send(audio_commit())

    async def request_response(self) -> bool:
        return await self.send(
            response_create(
                self._settings.modalities,
                max_output_tokens=self._settings.max_response_tokens,
            )
        )

    async def disconnect(self) -> None:
        """
        Close from any state. Idempotent.

        State, pending queue and generation change before the first await,
        so late messages from the old transport are discarded.
        """
        if self._session.state is SessionState.CLOSED and self._transport is None:
            return

        dropped = len(self._session.pending)
        transport = self._close_now()
        log_event({
            "event_type": "SESSION_DISCONNECTED",
            "pending_dropped": dropped,
            **self._session.log_context(),
        })
        if transport is not None:
            await self._close_transport(transport)

    # =========================================================================
    # Connect / retry
    # =========================================================================

    async def _run_connect(self, *, after_loss: bool) -> None:
        session = self._session
        if not after_loss:
            session.retry = reset_attempt()
            self._set_state(SessionState.CONNECTING)

        while True:
            if session.retry.attempt > 0:
                await self._sleep(retry_delay_s(policy=self._policy, attempt=session.retry))
                self._set_state(SessionState.CONNECTING)

            try:
                await self._attempt()
                return
            except AuthenticationFailed as exc:
                self._fail(exc)
                raise
            except (ConnectionTimeout, HandshakeTimeout, TransportError) as exc:
                self._report(exc)
                retry = next_attempt(session.retry)
                if not should_retry(
                    policy=self._policy,
                    failure=_FAILURE_TYPES[type(exc)],
                    attempt=retry,
                ):
                    failed = ConnectionFailed(
                        f"Could not connect after {retry.attempt} attempts",
                        attempts=retry.attempt,
                        last_error=exc,
                    )
                    self._fail(failed)
                    raise failed from exc
                session.retry = retry
                self._set_state(SessionState.RECONNECTING)

    async def _attempt(self) -> None:
        """
        One open + handshake.

        Raises:
            ConnectionTimeout / HandshakeTimeout / TransportError (retryable)
            AuthenticationFailed (fatal)
        """
        try:
            transport = await asyncio.wait_for(
                self._open_transport(self._url, self._headers),
                timeout=self._policy.connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionTimeout(
                f"No connection within {self._policy.connect_timeout_s:g}s"
            ) from exc
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if rejected_for_auth(exc):
                raise AuthenticationFailed("Upstream rejected the credential", detail=str(exc)) from exc
            raise TransportError(f"Connection failed: {exc}") from exc

        self._transport = transport
        self._set_state(SessionState.HANDSHAKING)

        try:
            with timed("session_handshake") as extra:
                session_id = await asyncio.wait_for(
                    self._await_created(transport),
                    timeout=self._policy.handshake_timeout_s,
                )
                extra["session_id"] = session_id
        except asyncio.TimeoutError as exc:
            await self._drop_transport(transport)
            raise HandshakeTimeout(
                f"No session.created within {self._policy.handshake_timeout_s:g}s"
            ) from exc
        except AuthenticationFailed:
            await self._drop_transport(transport)
            raise
        except TRANSPORT_ERRORS as exc:
            await self._drop_transport(transport)
            raise TransportError(f"Connection lost during handshake: {exc}") from exc

        await self._activate(transport, session_id)

    async def _await_created(self, transport: Transport) -> str | None:
        """Read until session.created; earlier messages are dispatched."""
        while True:
            raw = await transport.recv()
            msg = self._parse(raw)
            if msg is None:
                continue
            if isinstance(msg, SessionCreated):
                return msg.session_id
            if isinstance(msg, ErrorMessage) and msg.is_auth_failure:
                raise AuthenticationFailed(msg.message, detail=msg.code)
            self._dispatch(msg)

    async def _activate(self, transport: Transport, session_id: str | None) -> None:
        session = self._session
        session.session_id = session_id
        session.retry = reset_attempt()
        self._flushing = True
        self._set_state(SessionState.ACTIVE)
        self._recv_task = self._spawn(self._recv_loop(transport, self._generation))

        try:
            await transport.send(session_update(self._settings).to_json())
            await self._flush_pending(transport)
        except TRANSPORT_ERRORS as exc:
            log_event({
                "event_type": "SESSION_FLUSH_INTERRUPTED",
                "error": str(exc),
                **session.log_context(),
            })
        finally:
            self._flushing = False

    async def _flush_pending(self, transport: Transport) -> None:
        """Send queued messages in order, including ones queued mid-flush."""
        pending = self._session.pending
        flushed = 0
        while True:
            message = pending.popleft()
            if message is None:
                break
            try:
                await transport.send(message.to_json())
            except TRANSPORT_ERRORS:
                pending.requeue_front(message)
                raise
            flushed += 1

        if flushed:
            log_event({
                "event_type": "SESSION_PENDING_FLUSHED",
                "flushed": flushed,
                **self._session.log_context(),
            })

    # =========================================================================
    # Receive
    # =========================================================================

    async def _recv_loop(self, transport: Transport, generation: int) -> None:
        reason = "closed by peer"
        try:
            async for raw in transport:
                if generation != self._generation:
                    return
                msg = self._parse(raw)
                if msg is not None:
                    self._dispatch(msg)
        except TRANSPORT_ERRORS as exc:
            reason = str(exc) or type(exc).__name__

        if generation == self._generation:
            await self._on_transport_lost(transport, reason)

    async def _on_transport_lost(self, transport: Transport, reason: str) -> None:
        """ACTIVE transport went away: count one failure and reconnect in the background."""
        if self._session.state is not SessionState.ACTIVE:
            return

        generation = self._generation
        self._transport = None
        self._recv_task = None
        await self._close_transport(transport)

        # disconnect() may have run while the old transport was closing
        if generation != self._generation or self._session.state is not SessionState.ACTIVE:
            return

        self._report(TransportError(f"Connection lost: {reason}"))
        retry = next_attempt(self._session.retry)
        if not should_retry(policy=self._policy, failure=FailureType.TRANSPORT_CLOSED, attempt=retry):
            self._fail(ConnectionFailed(
                "Connection lost and retries are disabled",
                attempts=retry.attempt,
            ))
            return

        self._session.retry = retry
        self._set_state(SessionState.RECONNECTING)
        self._connect_task = self._spawn(self._run_connect(after_loss=True))

    def _parse(self, raw: str | bytes) -> Optional[InboundMessage]:
        try:
            return parse_inbound(raw)
        except MalformedMessage as exc:
            log_event({
                "event_type": "SESSION_MESSAGE_MALFORMED",
                "error": str(exc),
                **self._session.log_context(),
            })
            return None

    def _dispatch(self, msg: InboundMessage) -> None:
        self._handlers[msg.kind](msg)

    # -------------------------
    # Handlers
    # -------------------------

    def _ignore(self, msg: InboundMessage) -> None:
        pass

    def _handle_unknown(self, msg: UnknownMessage) -> None:
        log_event({
            "event_type": "SESSION_MESSAGE_IGNORED",
            "message_type": msg.type_name,
            **self._session.log_context(),
        })

    def _handle_session_created(self, msg: SessionCreated) -> None:
        log_event({
            "event_type": "SESSION_CREATED_DUPLICATE",
            "new_session_id": msg.session_id,
            **self._session.log_context(),
        })
        self._session.session_id = msg.session_id

    def _handle_text_delta(self, msg: TextDelta) -> None:
        if self._on_text is not None:
            self._emit(self._on_text, msg.text)

    def _handle_audio_delta(self, msg: AudioDelta) -> None:
        self._session.inbound_seq += 1
        if self._on_audio is not None:
            chunk = InboundChunk(sequence_num=self._session.inbound_seq, encoded=msg.audio)
            self._emit(self._on_audio, chunk)

    def _handle_transcript(self, msg: AudioCommitted | TranscriptionCompleted) -> None:
        if msg.transcript and self._on_transcript is not None:
            self._emit(self._on_transcript, msg.transcript)

    def _handle_error_message(self, msg: ErrorMessage) -> None:
        if msg.is_auth_failure:
            self._fail(AuthenticationFailed(msg.message, detail=msg.code))
            return
        self._report(UpstreamError(msg.message, provider_code=msg.code))

    # =========================================================================
    # State / errors
    # =========================================================================

    def _set_state(self, new: SessionState) -> None:
        old = self._session.state
        if old is new:
            return
        self._session.state = new
        log_event({
            "event_type": "SESSION_STATE_CHANGED",
            "from": old.value,
            "to": new.value,
            **self._session.log_context(),
        })
        if self._on_state_change is not None:
            self._emit(self._on_state_change, old, new)

    def _report(self, exc: RealtimeError) -> None:
        log_event({
            "event_type": "SESSION_ERROR",
            "code": exc.code,
            "fatal": exc.fatal,
            "error": exc.message,
            "detail": exc.detail,
            **self._session.log_context(),
        })
        if self._on_error is not None:
            self._emit(self._on_error, exc)

    def _fail(self, exc: RealtimeError) -> None:
        """Fatal path: close first, then report exactly once."""
        transport = self._close_now()
        self._report(exc)
        if transport is not None:
            self._spawn(self._close_transport(transport))

    def _close_now(self) -> Optional[Transport]:
        """Synchronous part of shutdown. Returns the transport still to close."""
        self._generation += 1
        self._session.pending.clear()
        self._flushing = False
        self._set_state(SessionState.CLOSED)

        current = asyncio.current_task()
        for task in (self._connect_task, self._recv_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._connect_task = None
        self._recv_task = None

        transport, self._transport = self._transport, None
        return transport

    def _enqueue(self, message: OutboundMessage) -> bool:
        if self._session.pending.enqueue(message):
            return True
        log_event({
            "event_type": "SESSION_PENDING_DROPPED",
            "message_type": message.type.value,
            "dropped_total": self._session.pending.dropped,
            **self._session.log_context(),
        })
        return False

    # -------------------------
    # Helpers
    # -------------------------

    async def _drop_transport(self, transport: Transport) -> None:
        if self._transport is transport:
            self._transport = None
        await self._close_transport(transport)

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "SESSION_TRANSPORT_CLOSE_FAILED",
                "error": str(exc),
                **self._session.log_context(),
            })

    def _emit(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "SESSION_CALLBACK_FAILED",
                "callback": getattr(callback, "__name__", repr(callback)),
                "error": str(exc),
                **self._session.log_context(),
            })

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None or (isinstance(exc, RealtimeError) and exc.fatal):
            # fatal errors were already reported through on_error
            return
        log_event({
            "event_type": "SESSION_TASK_FAILED",
            "error": f"{type(exc).__name__}: {exc}",
            **self._session.log_context(),
        })
