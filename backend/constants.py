"""
BEHAVIORAL CONSTANTS
--------------------
Single source of truth for the audio format and the default connection
policy of the realtime pipeline.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- Protocol logic never imports connection defaults directly; they only
  seed AppConfig. Audio format constants are shared.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono @ 24kHz, 100ms frames)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 24_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)
AUDIO_WIRE_FORMAT: Final[str] = "pcm16"

FRAME_SIZE_SAMPLES: Final[int] = 2_400

# Float -> int16 quantization. Asymmetric so that -1.0 maps to -32768
# and 1.0 maps to 32767 without overflow.
PCM16_NEGATIVE_SCALE: Final[float] = 32_768.0
PCM16_POSITIVE_SCALE: Final[float] = 32_767.0

# =============================================================================
# Connection Policy Defaults
# =============================================================================

DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_RETRY_DELAY_MS: Final[int] = 1_000
DEFAULT_CONNECT_TIMEOUT_MS: Final[int] = 15_000
DEFAULT_HANDSHAKE_TIMEOUT_MS: Final[int] = 15_000

# Messages held while not ACTIVE. ~50 s of 100 ms audio frames.
DEFAULT_PENDING_QUEUE_MAX: Final[int] = 500

# =============================================================================
# Upstream Provider Defaults
# =============================================================================

DEFAULT_UPSTREAM_URL: Final[str] = "wss://api.openai.com/v1/realtime"
DEFAULT_REALTIME_MODEL: Final[str] = "gpt-4o-realtime-preview-2024-10-01"
DEFAULT_BETA_HEADER: Final[str] = "realtime=v1"
DEFAULT_VOICE: Final[str] = "alloy"
DEFAULT_INSTRUCTIONS: Final[str] = "You are a helpful assistant."
DEFAULT_MODALITIES: Final[Tuple[str, ...]] = ("text", "audio")
DEFAULT_TRANSCRIPTION_MODEL: Final[str] = "whisper-1"
DEFAULT_MAX_RESPONSE_TOKENS: Final[int] = 500
DEFAULT_GREETING: Final[str] = "Hello"

# =============================================================================
# Relay Service Defaults
# =============================================================================

DEFAULT_RELAY_HOST: Final[str] = "0.0.0.0"
DEFAULT_RELAY_PORT: Final[int] = 3_000
DEFAULT_RELAY_URL: Final[str] = "ws://localhost:3000/ws"

# Upstream frames carry base64 audio; 16 MiB leaves room for long deltas.
WS_MAX_MESSAGE_BYTES: Final[int] = 2**24

# Authentication failures reported by the provider
AUTH_ERROR_CODES: Final[Tuple[str, ...]] = (
    "invalid_api_key",
    "authentication_error",
    "unauthorized",
    "invalid_authentication",
)
AUTH_HTTP_STATUSES: Final[Tuple[int, ...]] = (401, 403)

