"""
Strictly ordered playback of inbound audio chunks.

Rules:
- FIFO: chunks render in arrival order
- At most one chunk renders at a time (single drain task)
- A chunk that fails to decode is skipped immediately; it never stalls
  the chunks behind it
- clear() discards everything queued and halts the chunk in flight
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Protocol

import numpy as np

from audio.frames import InboundChunk
from audio.pcm import PCMDecodeError, decode_chunk
from observability.logger import log_event


class OutputDevice(Protocol):
    """
    Audio sink.

    play() resolves once the samples have finished rendering.
    stop() halts whatever is rendering right now.
    """

    async def play(self, samples: np.ndarray) -> None: ...

    def stop(self) -> None: ...


PlaybackErrorFn = Callable[[Exception, InboundChunk], None]


class PlaybackQueue:
    """
    FIFO of InboundChunks rendered one at a time on an OutputDevice.

    enqueue() is synchronous and safe to call from protocol callbacks;
    rendering happens on a drain task owned by this queue.
    """

    def __init__(
        self,
        *,
        output: OutputDevice,
        on_error: PlaybackErrorFn | None = None,
    ) -> None:
        self._output = output
        self._on_error = on_error
        self._chunks: Deque[InboundChunk] = deque()
        self._drain_task: asyncio.Task[None] | None = None
        self._current: InboundChunk | None = None

        self.played: int = 0
        self.skipped: int = 0

    # -------------------------
    # Core queue operations
    # -------------------------

    def enqueue(self, chunk: InboundChunk) -> None:
        """Append a chunk; start rendering if nothing is playing."""
        self._chunks.append(chunk)
        if self._drain_task is None:
            self._drain_task = asyncio.create_task(self._drain())

    def clear(self) -> None:
        """
        Drop all queued chunks and halt the one in flight.

        Effective immediately: nothing queued before this call will render.
        """
        dropped = len(self._chunks)
        self._chunks.clear()

        task = self._drain_task
        self._drain_task = None
        in_flight = self._current
        self._current = None

        if task is not None and not task.done():
            task.cancel()
            self._output.stop()

        if dropped or in_flight is not None:
            log_event({
                "event_type": "PLAYBACK_CLEARED",
                "dropped_chunks": dropped,
                "halted_sequence_num": in_flight.sequence_num if in_flight else None,
            })

    async def idle(self) -> None:
        """Wait until the queue has drained (or was cleared)."""
        while self._drain_task is not None:
            task = self._drain_task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def playing(self) -> InboundChunk | None:
        """Chunk currently rendering, if any."""
        return self._current

    def snapshot(self) -> dict[str, int | None]:
        """Lightweight snapshot for logging."""
        return {
            "queued": len(self._chunks),
            "playing": self._current.sequence_num if self._current else None,
            "played": self.played,
            "skipped": self.skipped,
        }

    # -------------------------
    # Drain task
    # -------------------------

    async def _drain(self) -> None:
        me = asyncio.current_task()
        try:
            while self._chunks:
                chunk = self._chunks.popleft()

                try:
                    samples = decode_chunk(chunk.encoded)
                except PCMDecodeError as exc:
                    self._skip(chunk, exc)
                    continue

                self._current = chunk
                try:
                    await self._output.play(samples)
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    # A device failure on one chunk must not stall the rest
                    self._current = None
                    self._skip(chunk, exc)
                    continue
                self._current = None
                self.played += 1
        finally:
            # A cleared (cancelled) drain must not clobber a newer one.
            if self._drain_task is me:
                self._drain_task = None
                self._current = None

    def _skip(self, chunk: InboundChunk, exc: Exception) -> None:
        self.skipped += 1
        log_event({
            "event_type": "PLAYBACK_CHUNK_SKIPPED",
            "sequence_num": chunk.sequence_num,
            "error": f"{type(exc).__name__}: {exc}",
        })
        if self._on_error is None:
            return
        try:
            self._on_error(exc, chunk)
        except Exception as cb_exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "PLAYBACK_CALLBACK_FAILED",
                "sequence_num": chunk.sequence_num,
                "error": str(cb_exc),
            })
