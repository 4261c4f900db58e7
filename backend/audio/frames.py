"""
Audio frame primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass

from constants import AUDIO_SAMPLE_WIDTH_BYTES


@dataclass(frozen=True)
class AudioFrame:
    """
    Outbound microphone frame produced by AudioCaptureEncoder.

    sequence_num:
        Monotonic per capture run, starting at 1.
        Used for debugging only.

    pcm_bytes:
        PCM16 little-endian mono audio.
        Always exactly frame_size samples; short frames are never built.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the frame was completed
        on the capture thread. Observability only.
    """
    sequence_num: int
    pcm_bytes: bytes
    ts_ms: int

    @property
    def num_samples(self) -> int:
        """Number of 16-bit samples carried by this frame."""
        return len(self.pcm_bytes) // AUDIO_SAMPLE_WIDTH_BYTES


@dataclass(frozen=True)
class InboundChunk:
    """
    Inbound synthesized audio waiting for playback.

    sequence_num:
        Arrival order assigned by the session protocol (1, 2, 3, ...).

    encoded:
        Base64 text of PCM16 little-endian mono audio, exactly as it
        arrived on the wire. Decoding happens in the playback queue so a
        bad chunk is skipped there without affecting its neighbours.
    """
    sequence_num: int
    encoded: str
