"""SessionManager: get_or_create, dispatch, idle reaping, reset, list."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from relay.infra.logging_config import get_logger
from relay.infra.observer import Observer
from relay.models.session import PendingEvent, Session
from relay.schemas.relay import ConversationKey, EventKind, InboundEvent, OutboundMessage
from relay.services.outbound_dispatcher import OutboundDispatcher
from relay.workers.backend import ERROR_NOTICE, BackendClient

logger = get_logger("sessions")

RESET_COMMAND = "reset"
RESET_NOTICE = "Conversation reset. The agent will start fresh."
HELP_NOTICE = "Unknown command. Available commands: {prefix}reset"


class SessionManager:
    """
    Owns every Session and serializes work per conversation.

    Each session has at most one event in flight. dispatch() never blocks: it
    queues the event and, when the session is idle, promotes it and schedules
    processing on the shared worker pool. Completion promotes the next queued
    event, so a slow conversation never holds up the router.
    """

    def __init__(
        self,
        backend: BackendClient,
        dispatcher: OutboundDispatcher,
        observer: Observer,
        idle_timeout: float = 1800.0,
        max_pending: int = 50,
        pool_size: int = 16,
        control_prefix: str = "!",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._dispatcher = dispatcher
        self._observer = observer
        self._idle_timeout = idle_timeout
        self._max_pending = max_pending
        self._pool = asyncio.Semaphore(pool_size)
        self._control_prefix = control_prefix
        self._clock = clock
        self._sessions: dict[ConversationKey, Session] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._accepting = True

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, key: ConversationKey) -> Optional[Session]:
        return self._sessions.get(key)

    def get_or_create(self, key: ConversationKey) -> Session:
        # No await between lookup and insert, so creation is atomic on the loop
        session = self._sessions.get(key)
        if session is None:
            now = self._clock()
            session = Session(key=key, created_at=now, last_activity=now)
            self._sessions[key] = session
            logger.debug("Created session %s", key)
        return session

    def dispatch(self, session: Session, event: InboundEvent) -> bool:
        """Queue an event on its session. Returns False when it was rejected."""
        if not self._accepting:
            self._observer.emit(
                "event_dropped",
                conversation=str(session.key),
                sequence=event.sequence,
                reason="shutting down",
            )
            return False
        if len(session.pending) >= self._max_pending:
            self._observer.emit(
                "queue_overflow",
                conversation=str(session.key),
                sequence=event.sequence,
                pending=len(session.pending),
            )
            return False
        session.pending.append(PendingEvent(session.next_sequence(), event))
        session.touch(self._clock())
        if session.in_flight is None:
            self._promote(session)
        return True

    def _promote(self, session: Session) -> None:
        if not session.pending:
            session.in_flight = None
            return
        session.in_flight = session.pending.popleft()
        task = asyncio.create_task(
            self._run_in_flight(session),
            name=f"session:{session.key}:{session.in_flight.sequence}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session task %s failed: %r", task.get_name(), task.exception())

    async def _run_in_flight(self, session: Session) -> None:
        pending = session.in_flight
        cancelled = False
        try:
            async with self._pool:
                await self._process(session, pending)
        except asyncio.CancelledError:
            cancelled = True
            logger.warning("Cancelled %s seq=%s", session.key, pending.sequence)
            raise
        except Exception:
            logger.exception(
                "Failed processing %s seq=%s", session.key, pending.sequence
            )
            await self._dispatcher.submit(
                OutboundMessage(
                    key=session.key,
                    sequence=pending.sequence,
                    text=ERROR_NOTICE,
                    reply_to=pending.event.message_id,
                    is_error=True,
                )
            )
        finally:
            session.touch(self._clock())
            session.in_flight = None
            if not cancelled:
                self._promote(session)

    async def _process(self, session: Session, pending: PendingEvent) -> None:
        event = pending.event
        if event.kind is EventKind.MESSAGE:
            async for outbound in self._backend.converse(session, event):
                await self._dispatcher.submit(outbound)
            return
        if event.kind is EventKind.CONTROL:
            text = self._handle_control(session, event)
        else:
            text = ""
        await self._dispatcher.submit(
            OutboundMessage(
                key=session.key,
                sequence=pending.sequence,
                text=text,
                reply_to=event.message_id,
            )
        )

    def _handle_control(self, session: Session, event: InboundEvent) -> str:
        command = event.text.strip()
        if command.startswith(self._control_prefix):
            command = command[len(self._control_prefix):]
        # Slash commands arrive as "/relay reset"
        words = command.lstrip("/").split()
        if RESET_COMMAND in words[:2]:
            session.context = None
            logger.info("Reset context for %s", session.key)
            return RESET_NOTICE
        return HELP_NOTICE.format(prefix=self._control_prefix)

    def reset_session(self, key: ConversationKey) -> bool:
        session = self._sessions.get(key)
        if session is None:
            return False
        session.context = None
        return True

    def list_sessions(self) -> list[Session]:
        return sorted(
            self._sessions.values(), key=lambda s: s.last_activity, reverse=True
        )

    def reap_idle(self, now: Optional[float] = None) -> list[ConversationKey]:
        """Remove sessions with no queued or in-flight work that idled past the timeout."""
        now = self._clock() if now is None else now
        reaped: list[ConversationKey] = []
        for key, session in list(self._sessions.items()):
            if session.busy:
                continue
            if now - session.last_activity < self._idle_timeout:
                continue
            if not self._dispatcher.is_settled(key):
                continue
            del self._sessions[key]
            self._dispatcher.forget(key)
            reaped.append(key)
            self._observer.emit(
                "session_reaped",
                conversation=str(key),
                idle=round(now - session.last_activity, 3),
            )
        return reaped

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.reap_idle()

    def stop_accepting(self) -> None:
        self._accepting = False

    @property
    def in_flight_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.in_flight is not None)

    async def wait_idle(self, timeout: float) -> bool:
        """Wait for in-flight work to finish; cancel what remains after timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)
        if not self._tasks:
            return True
        logger.warning("Cancelling %d in-flight session tasks", len(self._tasks))
        tasks = set(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        return False
