"""
sounddevice-backed capture and output devices.

Imported only by the CLI entry point: importing sounddevice requires the
PortAudio shared library, which test and relay hosts may not have.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import numpy as np
import sounddevice as sd

from audio.capture import CaptureDeviceError, SampleCallback
from constants import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE_HZ
from observability.logger import log_event


class SoundDeviceInput:
    """
    Microphone capture via sd.InputStream.

    The stream callback runs on PortAudio's real-time thread and only
    forwards a copy of the first channel to the encoder callback.
    """

    def __init__(self, device: Optional[int] = None) -> None:
        self.device = device
        self._stream: Optional[sd.InputStream] = None

    def open(
        self,
        *,
        sample_rate: int,
        channels: int,
        block_size: int,
        callback: SampleCallback,
    ) -> None:
        """Open and start the input stream."""
        def _on_audio(indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:  # pylint: disable=unused-argument
            if status:
                log_event({
                    "event_type": "CAPTURE_DEVICE_STATUS",
                    "status": str(status),
                })
            callback(indata[:, 0].copy())

        try:
            self._stream = sd.InputStream(
                device=self.device,
                channels=channels,
                samplerate=sample_rate,
                blocksize=block_size,
                dtype="float32",
                callback=_on_audio,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise CaptureDeviceError(f"microphone unavailable: {exc}") from exc

    def close(self) -> None:
        """Stop and close the stream."""
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None


class SoundDeviceOutput:
    """
    Speaker output via sd.play / sd.wait.

    play() blocks a worker thread until the chunk has rendered, so the
    event loop stays free; stop() makes the pending sd.wait() return.
    """

    def __init__(
        self,
        device: Optional[int] = None,
        sample_rate: int = AUDIO_SAMPLE_RATE_HZ,
        channels: int = AUDIO_CHANNELS,
    ) -> None:
        self.device = device
        self.sample_rate = sample_rate
        self.channels = channels

    async def play(self, samples: np.ndarray) -> None:
        await asyncio.to_thread(self._play_blocking, samples)

    def stop(self) -> None:
        sd.stop()

    def _play_blocking(self, samples: np.ndarray) -> None:
        sd.play(samples, samplerate=self.sample_rate, device=self.device)
        sd.wait()
