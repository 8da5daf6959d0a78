from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Optional

from relay.config import Settings, get_settings
from relay.core.errors import BackendError, BackendErrorKind
from relay.infra.logging_config import get_logger
from relay.infra.observer import Observer
from relay.models.session import Session
from relay.schemas.backend import BackendRequest
from relay.schemas.relay import InboundEvent, OutboundMessage
from relay.workers.transports import (
    BackendTransport,
    HttpBackendTransport,
    WebSocketBackendTransport,
)

logger = get_logger("backend")

ERROR_NOTICE = "Sorry, I encountered an error processing your message."
TIMEOUT_NOTICE = "Sorry, the agent took too long to answer. Please try again."


class BackendClient:
    """
    Runs one conversational turn against the backend agent.

    converse() yields reply chunks for the session's in-flight event and always
    ends with exactly one final message, so the conversation never hangs:
    retryable failures are retried a bounded number of times before any chunk
    is delivered, everything else becomes an error notice.
    """

    def __init__(
        self,
        transport: BackendTransport,
        observer: Observer,
        retry_limit: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self._transport = transport
        self._observer = observer
        self._retry_limit = retry_limit
        self._retry_delay = retry_delay

    async def converse(
        self, session: Session, event: InboundEvent
    ) -> AsyncIterator[OutboundMessage]:
        sequence = session.current_sequence
        if sequence is None:
            raise RuntimeError(f"Session {session.key} has no in-flight event")

        def reply(text: str, chunk: int, final: bool, is_error: bool = False):
            return OutboundMessage(
                key=session.key,
                sequence=sequence,
                chunk=chunk,
                final=final,
                text=text,
                reply_to=event.message_id,
                is_error=is_error,
            )

        attempt = 0
        emitted = 0
        while True:
            request = BackendRequest(
                conversation=str(session.key),
                text=event.text,
                context=session.context,
                event_id=event.message_id,
                user_id=event.user_id,
            )
            try:
                async with contextlib.aclosing(self._transport.exchange(request)) as chunks:
                    async for chunk in chunks:
                        if chunk.context is not None:
                            session.context = chunk.context
                        if chunk.text:
                            yield reply(chunk.text, emitted, final=False)
                            emitted += 1
                        if chunk.done:
                            break
            except BackendError as e:
                self._observer.emit(
                    "backend_error",
                    conversation=str(session.key),
                    sequence=sequence,
                    kind=e.kind.value,
                    attempt=attempt,
                    error=str(e),
                )
                if e.kind.retryable and emitted == 0 and attempt < self._retry_limit:
                    attempt += 1
                    await asyncio.sleep(self._retry_delay * attempt)
                    continue
                notice = (
                    TIMEOUT_NOTICE if e.kind is BackendErrorKind.TIMEOUT else ERROR_NOTICE
                )
                yield reply(notice, emitted, final=True, is_error=True)
                return
            yield reply("", emitted, final=True)
            return

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_transport(settings: Settings) -> BackendTransport:
    if not settings.backend_url:
        raise ValueError("BACKEND_URL is not set")
    if settings.backend_transport == "websocket":
        return WebSocketBackendTransport(
            url=settings.backend_url,
            api_token=settings.backend_api_token,
            timeout=settings.backend_timeout_seconds,
        )
    return HttpBackendTransport(
        base_url=settings.backend_url,
        api_token=settings.backend_api_token,
        timeout=settings.backend_timeout_seconds,
    )


def build_backend_client_from_settings(
    observer: Observer, settings: Optional[Settings] = None
) -> BackendClient:
    settings = settings or get_settings()
    logger.info(
        "Backend config: transport=%s, url=%s, api_token=%s, retries=%s",
        settings.backend_transport,
        settings.backend_url,
        "set" if settings.backend_api_token else "not set",
        settings.backend_retry_limit,
    )
    return BackendClient(
        transport=build_transport(settings),
        observer=observer,
        retry_limit=settings.backend_retry_limit,
        retry_delay=settings.backend_retry_delay_seconds,
    )
