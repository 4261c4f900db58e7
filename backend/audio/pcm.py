"""PCM conversion utilities."""

from __future__ import annotations

import base64
import binascii

import numpy as np

from constants import PCM16_NEGATIVE_SCALE, PCM16_POSITIVE_SCALE


class PCMDecodeError(ValueError):
    """
    Raised when an inbound audio payload cannot be turned into samples.

    Recoverable: the playback queue skips the chunk and moves on.
    """


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Quantize float samples in [-1.0, 1.0] to signed 16-bit integers.

    Values are clamped before scaling. Negative values scale by 32768,
    non-negative by 32767, so -1.0 -> -32768 and 1.0 -> 32767.
    Fractions truncate toward zero.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(
        clipped < 0,
        clipped * PCM16_NEGATIVE_SCALE,
        clipped * PCM16_POSITIVE_SCALE,
    )
    return scaled.astype(np.int16)


def pcm16_to_bytes(samples: np.ndarray) -> bytes:
    """Serialize int16 samples as little-endian bytes."""
    return np.asarray(samples, dtype="<i2").tobytes()


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    Raises:
        PCMDecodeError if the byte count is odd (truncated sample).
    """
    if len(pcm_bytes) % 2 != 0:
        raise PCMDecodeError(f"odd PCM16 byte count: {len(pcm_bytes)}")

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")
    return audio_i16.astype(np.float32) / PCM16_NEGATIVE_SCALE


def encode_base64(pcm_bytes: bytes) -> str:
    """Wire encoding for audio payloads."""
    return base64.b64encode(pcm_bytes).decode("ascii")


def decode_base64(encoded: str) -> bytes:
    """
    Strict base64 decode of a wire audio payload.

    Raises:
        PCMDecodeError on invalid base64.
    """
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PCMDecodeError(f"invalid base64 audio payload: {exc}") from exc


def decode_chunk(encoded: str) -> np.ndarray:
    """
    Decode one base64 PCM16 payload into playable float32 samples.

    Raises:
        PCMDecodeError if the payload is empty, not base64, or truncated.
    """
    pcm_bytes = decode_base64(encoded)
    if not pcm_bytes:
        raise PCMDecodeError("empty audio payload")
    return pcm16le_to_float32(pcm_bytes)
