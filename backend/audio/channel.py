"""
One-way frame channel from the capture thread to the event loop.

The capture callback runs on the audio runtime's real-time thread and
must never block on, or share mutable buffers with, the control loop.
publish() only schedules delivery onto the loop; the loop side owns the
asyncio.Queue.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from audio.frames import AudioFrame
from observability.logger import log_event


_CLOSED = object()


class FrameChannel:
    """
    Thread-safe producer side, asyncio consumer side.

    max_frames:
        Consumer-side bound. 0 means unbounded. When full, the NEW frame
        is dropped and counted (the producer is never slowed down).
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_frames: int = 0,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_frames)
        self._closed = False
        self.dropped: int = 0

    # ------------------------------------------------------------------
    # Producer side (any thread)
    # ------------------------------------------------------------------

    def publish(self, frame: AudioFrame) -> None:
        """Hand a completed frame to the event loop. Never blocks."""
        if self._closed or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._deliver, frame)

    def close(self) -> None:
        """End the stream; consumers stop after draining delivered frames."""
        if self._closed:
            return
        self._closed = True
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._deliver_end)

    # ------------------------------------------------------------------
    # Consumer side (event loop)
    # ------------------------------------------------------------------

    async def receive(self) -> AudioFrame | None:
        """Next frame, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        assert isinstance(item, AudioFrame)
        return item

    def __aiter__(self) -> AsyncIterator[AudioFrame]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AudioFrame]:
        while True:
            frame = await self.receive()
            if frame is None:
                return
            yield frame

    # ------------------------------------------------------------------
    # Internal (loop thread only)
    # ------------------------------------------------------------------

    def _deliver(self, frame: AudioFrame) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            log_event({
                "event_type": "CAPTURE_FRAME_DROPPED",
                "sequence_num": frame.sequence_num,
                "dropped_total": self.dropped,
            })

    def _deliver_end(self) -> None:
        # The end marker must always land, even on a full queue.
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1
