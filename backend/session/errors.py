"""
Typed errors surfaced to the owner of a session.

Every error that crosses the session boundary is a RealtimeError with a
stable `code` and a `fatal` flag. Fatal errors end the session; the rest
are reported and the session carries on (or retries).
"""

from __future__ import annotations


class RealtimeError(Exception):
    """Base class for session-level errors."""

    code: str = "realtime_error"
    fatal: bool = False

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def describe(self) -> str:
        """One human-readable line for end users."""
        return self.message


# -------------------------
# Connection errors (retried)
# -------------------------

class ConnectionTimeout(RealtimeError):
    """No transport-level open within the connect timeout."""
    code = "connection_timeout"


class HandshakeTimeout(RealtimeError):
    """Transport open, but no session.created within the handshake timeout."""
    code = "handshake_timeout"


class TransportError(RealtimeError):
    """Transport refused, failed, or closed unexpectedly."""
    code = "transport_error"


# -------------------------
# Fatal errors
# -------------------------

class ConnectionFailed(RealtimeError):
    """Retry budget exhausted. No further automatic attempts."""
    code = "connection_failed"
    fatal = True

    def __init__(self, message: str, *, attempts: int, last_error: RealtimeError | None = None) -> None:
        super().__init__(message, detail=last_error.message if last_error else None)
        self.attempts = attempts
        self.last_error = last_error


class AuthenticationFailed(RealtimeError):
    """Credential rejected. Never retried."""
    code = "authentication_failed"
    fatal = True

    def describe(self) -> str:
        return "Authentication failed. Please check your API key."


# -------------------------
# Non-fatal provider errors
# -------------------------

class UpstreamError(RealtimeError):
    """Error message reported by the provider; the session stays up."""
    code = "upstream_error"

    def __init__(self, message: str, *, provider_code: str | None = None) -> None:
        super().__init__(message, detail=provider_code)
        self.provider_code = provider_code


# -------------------------
# Caller errors
# -------------------------

class SessionClosedError(RealtimeError):
    """send() on a CLOSED session."""
    code = "session_closed"
