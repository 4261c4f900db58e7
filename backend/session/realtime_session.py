"""
Realtime session container.

- Pure data owned and mutated by SessionProtocol
- NOT a state machine
- A fresh instance per connect() after CLOSED
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Optional

from protocol.messages import OutboundMessage
from session.retry import RetryAttempt, reset_attempt
from session.state import SessionState


class PendingQueue:
    """
    Bounded FIFO for messages submitted before the session is ACTIVE.

    Drop rule:
    - enqueue() drops the NEW message if the queue is full and counts it
    - requeue_front() (a send that failed mid-flight) ignores the bound
      so no already-accepted message is lost
    """

    def __init__(self, *, max_messages: int) -> None:
        if max_messages <= 0:
            raise ValueError("max_messages must be > 0")
        self._max = max_messages
        self._messages: Deque[OutboundMessage] = deque()
        self.dropped: int = 0

    def enqueue(self, message: OutboundMessage) -> bool:
        """
        Returns:
            True if queued
            False if dropped
        """
        if len(self._messages) >= self._max:
            self.dropped += 1
            return False
        self._messages.append(message)
        return True

    def requeue_front(self, message: OutboundMessage) -> None:
        self._messages.appendleft(message)

    def popleft(self) -> Optional[OutboundMessage]:
        if not self._messages:
            return None
        return self._messages.popleft()

    def clear(self) -> int:
        """Drop everything; returns how many messages were discarded."""
        count = len(self._messages)
        self._messages.clear()
        return count

    def __len__(self) -> int:
        return len(self._messages)

    def __bool__(self) -> bool:
        return bool(self._messages)

    def types(self) -> list[str]:
        """Queued message types in order (observability/tests)."""
        return [m.type.value for m in self._messages]


@dataclass
class RealtimeSession:
    """Mutable state of one logical connection."""

    max_pending: int
    state: SessionState = SessionState.IDLE
    session_id: str | None = None
    retry: RetryAttempt = field(default_factory=reset_attempt)
    created_at: float = field(default_factory=time.time)
    inbound_seq: int = 0
    pending: PendingQueue = field(init=False)

    def __post_init__(self) -> None:
        self.pending = PendingQueue(max_messages=self.max_pending)

    @property
    def retry_count(self) -> int:
        return self.retry.attempt

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for this session."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "pending": len(self.pending),
        }
