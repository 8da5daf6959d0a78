"""Health and session introspection."""

import time

from fastapi import APIRouter, Depends

from relay.core.runtime import Runtime
from relay.infra.observer import LoggingObserver
from relay.routers.utils.dependencies import get_runtime
from relay.schemas.relay import ConnectionState
from relay.schemas.status import HealthRead, SessionRow

router = APIRouter(tags=["status"])


@router.get("/health", response_model=HealthRead)
def health(runtime: Runtime = Depends(get_runtime)) -> HealthRead:
    state = runtime.reconnector.state
    events = (
        runtime.observer.snapshot()
        if isinstance(runtime.observer, LoggingObserver)
        else {}
    )
    return HealthRead(
        status="ok" if state is ConnectionState.CONNECTED else "degraded",
        connection_state=state.value,
        reconnect_attempt=runtime.reconnector.attempt,
        sessions=len(runtime.sessions),
        in_flight=runtime.sessions.in_flight_count,
        undelivered=runtime.dispatcher.undelivered_count,
        events=events,
    )


@router.get("/sessions", response_model=list[SessionRow])
def list_sessions(runtime: Runtime = Depends(get_runtime)) -> list[SessionRow]:
    """List live sessions, most recently active first."""
    now = time.monotonic()
    return [
        SessionRow(
            key=str(s.key),
            channel=s.key.channel,
            thread_ts=s.key.thread_ts,
            pending=len(s.pending),
            in_flight=s.current_sequence,
            idle_seconds=round(max(0.0, now - s.last_activity), 3),
            has_context=s.context is not None,
        )
        for s in runtime.sessions.list_sessions()
    ]
