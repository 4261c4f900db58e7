"""
VoiceClient: microphone -> realtime session -> speaker.

Responsibilities:
- Compose capture encoder, frame channel, session protocol and playback
- Forward captured frames to the session in capture order
- Turn control (commit + response request)
- Fatal error handling: stop capture, silence playback, one message to the owner

Non-responsibilities:
- Device selection (callers pass devices in)
- UI
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from audio.capture import AudioCaptureEncoder, CaptureDevice
from audio.channel import FrameChannel
from audio.frames import AudioFrame
from audio.playback import OutputDevice, PlaybackQueue
from config import AppConfig
from observability.logger import log_event
from protocol.transport import OpenTransportFn, open_websocket
from session.errors import RealtimeError, SessionClosedError
from session.protocol import SessionProtocol, SleepFn, StateChangeFn
from session.state import SessionState


MessageFn = Callable[[str], None]


class VoiceClient:
    """
    One voice conversation.

    direct=False (default) connects to the relay at `url` or
    config.relay_url. direct=True connects to the provider itself and
    attaches the credential headers.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        capture_device: CaptureDevice,
        output_device: OutputDevice,
        direct: bool = False,
        url: str | None = None,
        on_text: Optional[MessageFn] = None,
        on_transcript: Optional[MessageFn] = None,
        on_error: Optional[MessageFn] = None,
        on_state_change: Optional[StateChangeFn] = None,
        open_transport: OpenTransportFn = open_websocket,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if direct:
            target = url or config.upstream_endpoint()
            headers = config.upstream_headers()
        else:
            target = url or config.relay_url
            headers = {}

        self._on_error = on_error
        self._channel: Optional[FrameChannel] = None
        self._pump_task: Optional[asyncio.Task] = None

        self.playback = PlaybackQueue(output=output_device)
        self.encoder = AudioCaptureEncoder(
            device=capture_device,
            sink=self._publish_frame,
            frame_size=config.frame_size,
        )
        self.session = SessionProtocol(
            url=target,
            headers=headers,
            policy=config.connection_policy(),
            settings=config.session_settings(),
            on_text=on_text,
            on_audio=self.playback.enqueue,
            on_transcript=on_transcript,
            on_error=self._handle_session_error,
            on_state_change=on_state_change,
            open_transport=open_transport,
            pending_max=config.pending_queue_max,
            sleep=sleep,
        )

    @property
    def state(self) -> SessionState:
        return self.session.state

    # -------------------------
    # Lifecycle
    # -------------------------

    async def start(self) -> None:
        """
        Connect, then start capturing.

        Raises:
            ConnectionFailed / AuthenticationFailed from connect()
            DeviceUnavailable / AlreadyRunning from the capture device
            SessionClosedError if close() ran while connecting
        """
        await self.session.connect()
        if self.session.state is not SessionState.ACTIVE:
            raise SessionClosedError("client closed while connecting")

        self._channel = FrameChannel()
        self._pump_task = asyncio.create_task(self._pump_frames(self._channel))
        try:
            self.encoder.start()
        except Exception:
            await self.close()
            raise

        log_event({"event_type": "CLIENT_STARTED", "session_id": self.session.session_id})

    async def finish_turn(self) -> None:
        """End the user's turn and ask for a response."""
        await self.session.commit_audio()
        await self.session.request_response()

    async def close(self) -> None:
        """Stop capture, disconnect, silence playback. Idempotent."""
        self._stop_local()
        await self.session.disconnect()
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
            self._pump_task = None
        log_event({"event_type": "CLIENT_CLOSED"})

    # -------------------------
    # Internal
    # -------------------------

    def _publish_frame(self, frame: AudioFrame) -> None:
        # capture thread
        channel = self._channel
        if channel is not None:
            channel.publish(frame)

    async def _pump_frames(self, channel: FrameChannel) -> None:
        async for frame in channel:
            try:
                await self.session.send_audio(frame)
            except SessionClosedError:
                return

    def _stop_local(self) -> None:
        self.encoder.stop()
        if self._channel is not None:
            self._channel.close()
        self.playback.clear()

    def _handle_session_error(self, exc: RealtimeError) -> None:
        if not exc.fatal:
            log_event({
                "event_type": "CLIENT_SESSION_WARNING",
                "code": exc.code,
                "message": exc.message,
            })
            return

        self._stop_local()
        if self._on_error is not None:
            self._on_error(exc.describe())
