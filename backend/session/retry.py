"""
Retry policy helpers.

Purpose:
- Centralize connection retry rules
- Keep SessionProtocol's transition code free of policy arithmetic

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Failure classification used by retry policy.

    CONNECT_TIMEOUT:
        Transport did not open within the connect timeout.

    HANDSHAKE_TIMEOUT:
        Transport opened but session.created never arrived.

    TRANSPORT_CLOSED:
        An ACTIVE session lost its transport.

    TRANSPORT_ERROR:
        Transport refused or failed while opening.

    AUTH_FAILED:
        Credential rejected. Never retried.

    Notes:
    - disconnect() is NOT a failure and never triggers retries.
    """

    CONNECT_TIMEOUT = "connect_timeout"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    TRANSPORT_CLOSED = "transport_closed"
    TRANSPORT_ERROR = "transport_error"
    AUTH_FAILED = "auth_failed"


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class ConnectionPolicy:
    """
    Externally supplied connection budget.

    max_retries:
        Retries after the initial attempt.
    retry_delay_s:
        Fixed delay before each retry.
    connect_timeout_s / handshake_timeout_s:
        Independent budgets for transport open and session.created.
    """
    max_retries: int
    retry_delay_s: float
    connect_timeout_s: float
    handshake_timeout_s: float

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay_s < 0:
            raise ValueError("retry_delay_s must be >= 0")
        if self.connect_timeout_s <= 0 or self.handshake_timeout_s <= 0:
            raise ValueError("timeouts must be > 0")


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    attempt == 0 is the initial attempt; attempt == N is the Nth retry.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """Return a new RetryAttempt with attempt incremented by 1."""
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


def should_retry(
    *,
    policy: ConnectionPolicy,
    failure: FailureType,
    attempt: RetryAttempt,
) -> bool:
    """
    Returns True if retry number `attempt.attempt` is allowed.

    attempt = the retry about to be performed (1-based)
    """
    if failure is FailureType.AUTH_FAILED:
        return False
    return attempt.attempt <= policy.max_retries


def retry_delay_s(*, policy: ConnectionPolicy, attempt: RetryAttempt) -> float:  # pylint: disable=unused-argument
    """Fixed backoff: the same delay before every retry."""
    return policy.retry_delay_s
