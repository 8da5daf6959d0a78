from __future__ import annotations

from typing import AsyncIterator, Callable, Optional

from relay.core.conversation_key import build_conversation_key
from relay.core.errors import RoutingError
from relay.infra.logging_config import get_logger
from relay.infra.observer import Observer
from relay.schemas.relay import ConversationKey, InboundEvent
from relay.services.session_manager import SessionManager

logger = get_logger("router")

KeyResolver = Callable[[InboundEvent], ConversationKey]


class EventRouter:
    """Deterministic routing: every event goes to the session of its conversation."""

    def __init__(
        self,
        events: Callable[[], AsyncIterator[InboundEvent]],
        sessions: SessionManager,
        observer: Observer,
        resolver: Optional[KeyResolver] = None,
    ) -> None:
        self._events = events
        self._sessions = sessions
        self._observer = observer
        self._resolve = resolver or build_conversation_key
        self._stopped = False
        self.routed = 0
        self.dropped = 0

    async def run(self) -> None:
        logger.info("Event router started")
        async for event in self._events():
            if self._stopped:
                break
            self.route(event)
        logger.info(
            "Event router stopped (routed=%d, dropped=%d)", self.routed, self.dropped
        )

    def route(self, event: InboundEvent) -> None:
        """Hand one event to its session without waiting on any backend work."""
        try:
            key = self._resolve(event)
        except RoutingError as e:
            self.dropped += 1
            self._observer.emit(
                "event_dropped",
                sequence=event.sequence,
                kind=event.kind.value,
                reason=str(e),
            )
            return
        session = self._sessions.get_or_create(key)
        if self._sessions.dispatch(session, event):
            self.routed += 1
        else:
            self.dropped += 1

    def stop(self) -> None:
        self._stopped = True
