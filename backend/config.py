"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object
- Derive the connection policy and session settings handed to
  the protocol layers

Non-responsibilities:
- No protocol logic
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

from constants import (
    DEFAULT_BETA_HEADER,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_GREETING,
    DEFAULT_HANDSHAKE_TIMEOUT_MS,
    DEFAULT_INSTRUCTIONS,
    DEFAULT_MAX_RESPONSE_TOKENS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MODALITIES,
    DEFAULT_PENDING_QUEUE_MAX,
    DEFAULT_REALTIME_MODEL,
    DEFAULT_RELAY_HOST,
    DEFAULT_RELAY_PORT,
    DEFAULT_RELAY_URL,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_TRANSCRIPTION_MODEL,
    DEFAULT_UPSTREAM_URL,
    DEFAULT_VOICE,
    FRAME_SIZE_SAMPLES,
)
from protocol.messages import SessionSettings
from session.retry import ConnectionPolicy


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_modalities(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the relay bridge and the voice client.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"
    enable_json_logs: bool = True

    # ------------------------------------------------------------------
    # Upstream provider
    # ------------------------------------------------------------------

    openai_api_key: str | None = None
    realtime_model: str = DEFAULT_REALTIME_MODEL
    upstream_url: str = DEFAULT_UPSTREAM_URL
    beta_header: str = DEFAULT_BETA_HEADER

    # ------------------------------------------------------------------
    # Session configuration
    # ------------------------------------------------------------------

    voice: str = DEFAULT_VOICE
    instructions: str = DEFAULT_INSTRUCTIONS
    modalities: Tuple[str, ...] = DEFAULT_MODALITIES
    transcription_model: str | None = DEFAULT_TRANSCRIPTION_MODEL
    max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS
    greeting: str | None = DEFAULT_GREETING

    # ------------------------------------------------------------------
    # Relay service
    # ------------------------------------------------------------------

    relay_host: str = DEFAULT_RELAY_HOST
    relay_port: int = DEFAULT_RELAY_PORT
    relay_url: str = DEFAULT_RELAY_URL

    # ------------------------------------------------------------------
    # Connection policy
    # ------------------------------------------------------------------

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    handshake_timeout_ms: int = DEFAULT_HANDSHAKE_TIMEOUT_MS
    pending_queue_max: int = DEFAULT_PENDING_QUEUE_MAX

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    frame_size: int = FRAME_SIZE_SAMPLES

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable is malformed or out of range.
        """
        greeting = os.environ.get("RELAY_GREETING", DEFAULT_GREETING)
        transcription = os.environ.get(
            "TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL
        )
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            realtime_model=os.environ.get("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
            upstream_url=os.environ.get("OPENAI_REALTIME_URL", DEFAULT_UPSTREAM_URL),
            beta_header=os.environ.get("OPENAI_BETA_HEADER", DEFAULT_BETA_HEADER),

            voice=os.environ.get("REALTIME_VOICE", DEFAULT_VOICE),
            instructions=os.environ.get("REALTIME_INSTRUCTIONS", DEFAULT_INSTRUCTIONS),
            modalities=_env_modalities("REALTIME_MODALITIES", DEFAULT_MODALITIES),
            transcription_model=transcription or None,
            max_response_tokens=_env_int(
                "MAX_RESPONSE_TOKENS", DEFAULT_MAX_RESPONSE_TOKENS, minimum=1
            ),
            greeting=greeting or None,

            relay_host=os.environ.get("RELAY_HOST", DEFAULT_RELAY_HOST),
            relay_port=_env_int("PORT", DEFAULT_RELAY_PORT, minimum=1),
            relay_url=os.environ.get("RELAY_URL", DEFAULT_RELAY_URL),

            max_retries=_env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_delay_ms=_env_int("RETRY_DELAY_MS", DEFAULT_RETRY_DELAY_MS),
            connect_timeout_ms=_env_int(
                "CONNECTION_TIMEOUT_MS", DEFAULT_CONNECT_TIMEOUT_MS, minimum=1
            ),
            handshake_timeout_ms=_env_int(
                "HANDSHAKE_TIMEOUT_MS", DEFAULT_HANDSHAKE_TIMEOUT_MS, minimum=1
            ),
            pending_queue_max=_env_int(
                "PENDING_QUEUE_MAX", DEFAULT_PENDING_QUEUE_MAX, minimum=1
            ),

            frame_size=_env_int("FRAME_SIZE", FRAME_SIZE_SAMPLES, minimum=1),
        )

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def connection_policy(self) -> ConnectionPolicy:
        """Retry/timeout policy for one logical connection."""
        return ConnectionPolicy(
            max_retries=self.max_retries,
            retry_delay_s=self.retry_delay_ms / 1000.0,
            connect_timeout_s=self.connect_timeout_ms / 1000.0,
            handshake_timeout_s=self.handshake_timeout_ms / 1000.0,
        )

    def session_settings(self) -> SessionSettings:
        """Initial session configuration sent once the session is created."""
        return SessionSettings(
            voice=self.voice,
            instructions=self.instructions,
            modalities=self.modalities,
            transcription_model=self.transcription_model,
            max_response_tokens=self.max_response_tokens,
        )

    def upstream_endpoint(self) -> str:
        """Provider websocket URL including the model query parameter."""
        return f"{self.upstream_url}?model={self.realtime_model}"

    def upstream_headers(self) -> dict[str, str]:
        """
        Headers attached to the upstream websocket upgrade.

        Raises:
            RuntimeError if no API key is configured.
        """
        if not self.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable not set")
        return {
            "Authorization": f"Bearer {self.openai_api_key}",
            "OpenAI-Beta": self.beta_header,
        }
