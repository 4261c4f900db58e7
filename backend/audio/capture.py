"""
Microphone capture and fixed-size PCM16 framing.

AudioCaptureEncoder sits between a capture device and a one-way frame
sink (normally FrameChannel.publish):

- process() is invoked by the device on its real-time thread with
  irregular batches of float samples in [-1, 1]
- samples accumulate in a fixed-size buffer; every time it fills, the
  buffer is quantized to PCM16 and emitted as one AudioFrame
- leftovers carry over to the next batch
- stop() drops the partial tail; a short frame is never emitted
"""

from __future__ import annotations

import threading
from typing import Callable, Protocol

import numpy as np

from audio.frames import AudioFrame
from audio.pcm import float32_to_pcm16, pcm16_to_bytes
from constants import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE_HZ, FRAME_SIZE_SAMPLES
from observability.logger import log_event, now_ms


# -------------------------
# Exceptions
# -------------------------

class CaptureError(Exception):
    """Base class for capture errors."""


class CaptureDeviceError(CaptureError):
    """Raised by a CaptureDevice that cannot be opened."""


class DeviceUnavailable(CaptureError):
    """
    Capture device missing or access denied.

    Fatal to capture only; never retried.
    """


class AlreadyRunning(CaptureError):
    """start() called on an encoder that is already capturing."""


# -------------------------
# Device contract
# -------------------------

SampleCallback = Callable[[np.ndarray], None]
FrameSink = Callable[[AudioFrame], None]


class CaptureDevice(Protocol):
    """
    Source of raw float samples.

    open() starts delivering mono float32 batches to callback from the
    device's own thread and raises CaptureDeviceError on failure.
    """

    def open(
        self,
        *,
        sample_rate: int,
        channels: int,
        block_size: int,
        callback: SampleCallback,
    ) -> None: ...

    def close(self) -> None: ...


# -------------------------
# Encoder
# -------------------------

class AudioCaptureEncoder:
    """
    Converts a live float sample stream into PCM16 AudioFrames.

    Thread model:
    - start()/stop() are called from the control loop
    - process() is called from the capture thread
    - the buffer lock is held only for in-memory copies, never across
      the sink call or device I/O
    """

    def __init__(
        self,
        *,
        device: CaptureDevice,
        sink: FrameSink,
        frame_size: int = FRAME_SIZE_SAMPLES,
        sample_rate: int = AUDIO_SAMPLE_RATE_HZ,
        channels: int = AUDIO_CHANNELS,
    ) -> None:
        if frame_size <= 0:
            raise ValueError("frame_size must be > 0")

        self._device = device
        self._sink = sink
        self._frame_size = frame_size
        self._sample_rate = sample_rate
        self._channels = channels

        self._buffer = np.zeros(frame_size, dtype=np.float32)
        self._fill = 0
        self._next_seq = 1
        self._running = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def buffered_samples(self) -> int:
        """Samples waiting for the next full frame."""
        return self._fill

    def start(self) -> None:
        """
        Acquire the capture device.

        Raises:
            AlreadyRunning if already capturing.
            DeviceUnavailable if the device cannot be opened.
        """
        if self._running:
            raise AlreadyRunning("capture already running")

        with self._lock:
            self._fill = 0
            self._next_seq = 1
        self._running = True

        try:
            self._device.open(
                sample_rate=self._sample_rate,
                channels=self._channels,
                block_size=0,
                callback=self.process,
            )
        except CaptureDeviceError as exc:
            self._running = False
            log_event({
                "event_type": "CAPTURE_DEVICE_UNAVAILABLE",
                "error": str(exc),
            })
            raise DeviceUnavailable(str(exc)) from exc

        log_event({
            "event_type": "CAPTURE_STARTED",
            "sample_rate": self._sample_rate,
            "frame_size": self._frame_size,
        })

    def stop(self) -> None:
        """
        Release the device and discard any partial frame. Idempotent.
        """
        if not self._running:
            return
        self._running = False
        self._device.close()

        with self._lock:
            discarded = self._fill
            self._fill = 0

        log_event({
            "event_type": "CAPTURE_STOPPED",
            "discarded_samples": discarded,
            "frames_emitted": self._next_seq - 1,
        })

    # ------------------------------------------------------------------
    # Capture thread
    # ------------------------------------------------------------------

    def process(self, samples: np.ndarray) -> None:
        """
        Consume one batch of raw samples (any length, mono float).

        Emits floor((buffered + len(samples)) / frame_size) frames.
        """
        if not self._running:
            return

        data = np.asarray(samples, dtype=np.float32).reshape(-1)
        ready: list[AudioFrame] = []

        with self._lock:
            offset = 0
            while offset < len(data):
                take = min(self._frame_size - self._fill, len(data) - offset)
                self._buffer[self._fill:self._fill + take] = data[offset:offset + take]
                self._fill += take
                offset += take

                if self._fill == self._frame_size:
                    ready.append(
                        AudioFrame(
                            sequence_num=self._next_seq,
                            pcm_bytes=pcm16_to_bytes(float32_to_pcm16(self._buffer)),
                            ts_ms=now_ms(),
                        )
                    )
                    self._next_seq += 1
                    self._fill = 0

        for frame in ready:
            self._sink(frame)
