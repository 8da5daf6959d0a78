from __future__ import annotations

import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from relay.schemas.relay import ConversationKey, InboundEvent


@dataclass(frozen=True)
class PendingEvent:
    sequence: int
    event: InboundEvent


@dataclass(eq=False)
class Session:
    """In-memory state of one conversation. Only SessionManager mutates it."""

    key: ConversationKey
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    pending: deque[PendingEvent] = field(default_factory=deque)
    in_flight: Optional[PendingEvent] = None
    # Opaque backend state needed to continue a multi-turn exchange
    context: Optional[Any] = None
    _counter: itertools.count = field(
        default_factory=lambda: itertools.count(1), init=False, repr=False
    )

    def next_sequence(self) -> int:
        return next(self._counter)

    @property
    def current_sequence(self) -> Optional[int]:
        return self.in_flight.sequence if self.in_flight else None

    @property
    def busy(self) -> bool:
        return self.in_flight is not None or bool(self.pending)

    def touch(self, now: float) -> None:
        self.last_activity = now
