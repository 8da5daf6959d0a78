"""
Structured observability events.

The core only emits; sinks decide what to do with them. LoggingObserver writes
each event to the relay log and keeps per-event counters for the status API.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Protocol

from relay.infra.logging_config import get_logger

logger = get_logger("events")

WARNING_EVENTS = frozenset(
    {
        "event_dropped",
        "queue_overflow",
        "backend_error",
        "connect_failed",
        "link_closed",
        "gap_timeout",
        "send_failed",
        "hook_failed",
    }
)


class Observer(Protocol):
    def emit(self, event: str, **fields: Any) -> None: ...


class LoggingObserver:
    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()

    def emit(self, event: str, **fields: Any) -> None:
        self.counts[event] += 1
        detail = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        if event in WARNING_EVENTS:
            logger.warning("%s %s", event, detail, extra={"relay_event": event})
        else:
            logger.info("%s %s", event, detail, extra={"relay_event": event})

    def snapshot(self) -> dict[str, int]:
        return dict(self.counts)
