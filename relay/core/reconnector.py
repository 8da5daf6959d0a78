"""Reconnecting wrapper around a gateway link."""

from __future__ import annotations

import asyncio
import contextlib
import random
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from relay.adapters.base import BaseGatewayLink
from relay.core.errors import ConnectError, SendError, SendErrorKind
from relay.infra.logging_config import get_logger
from relay.infra.observer import Observer
from relay.schemas.relay import (
    ConnectionState,
    InboundEvent,
    LinkClosed,
    OutboundMessage,
    OutboundSendResult,
)

logger = get_logger("reconnector")

ConnectedHook = Callable[[], Awaitable[None]]

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.DRAINING}
    ),
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.DRAINING,
        }
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.DISCONNECTED, ConnectionState.DRAINING}
    ),
    ConnectionState.DRAINING: frozenset(),
}


class ConnectionStateMachine:
    """Connection state with the allowed transitions; draining is terminal."""

    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    def transition(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        if new_state not in _TRANSITIONS[self._state]:
            raise ValueError(
                f"Invalid connection transition {self._state.value} -> {new_state.value}"
            )
        logger.debug("Connection state %s -> %s", self._state.value, new_state.value)
        self._state = new_state


@dataclass
class BackoffPolicy:
    """delay(attempt) = min(cap, base * 2**attempt) + uniform(0, jitter)."""

    base: float = 1.0
    cap: float = 60.0
    jitter: float = 1.0
    rng: Callable[[float, float], float] = field(default=random.uniform)

    def delay(self, attempt: int) -> float:
        # Clamp the exponent so large attempt counts do not overflow
        exp = min(attempt, 62)
        bounded = min(self.cap, self.base * (2**exp))
        if self.jitter <= 0:
            return bounded
        return bounded + self.rng(0.0, self.jitter)


class Reconnector:
    """
    Keeps a gateway link connected and presents one event stream across reconnects.

    Events are only delivered while connected; sends while disconnected or
    connecting raise SendError(NOT_CONNECTED) so callers decide whether to buffer.
    """

    def __init__(
        self,
        link: BaseGatewayLink,
        observer: Observer,
        backoff: Optional[BackoffPolicy] = None,
        stability_threshold: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._link = link
        self._observer = observer
        self._backoff = backoff or BackoffPolicy()
        self._stability_threshold = stability_threshold
        self._clock = clock
        self._machine = ConnectionStateMachine()
        self._drain_requested = asyncio.Event()
        self._hooks: list[ConnectedHook] = []
        self.attempt = 0

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def draining(self) -> bool:
        return self._drain_requested.is_set()

    def on_connected(self, hook: ConnectedHook) -> None:
        """Register a hook awaited after each connect, before events resume."""
        self._hooks.append(hook)

    async def events(self) -> AsyncIterator[InboundEvent]:
        while not self.draining:
            self._machine.transition(ConnectionState.CONNECTING)
            try:
                await self._link.connect()
            except ConnectError as e:
                self._observer.emit("connect_failed", attempt=self.attempt, error=str(e))
                if self.draining:
                    break
                self._machine.transition(ConnectionState.DISCONNECTED)
                await self._backoff_pause()
                continue
            if self.draining:
                break

            self._machine.transition(ConnectionState.CONNECTED)
            connected_at = self._clock()
            self._observer.emit("connected", attempt=self.attempt)
            for hook in self._hooks:
                try:
                    await hook()
                except Exception as e:
                    logger.exception("on_connected hook %r failed", hook)
                    self._observer.emit("hook_failed", hook=repr(hook), error=str(e))

            closed: Optional[LinkClosed] = None
            async with contextlib.aclosing(
                self._until_drained(self._link.events())
            ) as items:
                async for item in items:
                    if isinstance(item, LinkClosed):
                        closed = item
                        break
                    yield item

            if self.draining:
                break

            self._machine.transition(ConnectionState.DISCONNECTED)
            if self._clock() - connected_at >= self._stability_threshold:
                self.attempt = 0
            self._observer.emit(
                "link_closed",
                reason=closed.reason if closed else "stream ended",
                graceful=closed.graceful if closed else False,
            )
            await self._backoff_pause()

    async def _until_drained(self, items: AsyncIterator) -> AsyncIterator:
        """Relay items from the link, stopping promptly once a drain is requested."""
        drain_wait = asyncio.ensure_future(self._drain_requested.wait())
        try:
            while True:
                next_item = asyncio.ensure_future(items.__anext__())
                done, _ = await asyncio.wait(
                    {next_item, drain_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_item not in done:
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await next_item
                    return
                try:
                    item = next_item.result()
                except StopAsyncIteration:
                    return
                yield item
        finally:
            drain_wait.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drain_wait
            aclose = getattr(items, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _backoff_pause(self) -> None:
        if self.draining:
            return
        delay = self._backoff.delay(self.attempt)
        self._observer.emit("reconnect_scheduled", attempt=self.attempt, delay=round(delay, 3))
        self.attempt += 1
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._drain_requested.wait(), timeout=delay)

    async def send(self, outbound: OutboundMessage) -> OutboundSendResult:
        if self.state not in (ConnectionState.CONNECTED, ConnectionState.DRAINING):
            raise SendError(SendErrorKind.NOT_CONNECTED, f"Gateway is {self.state.value}")
        if not self._link.is_connected:
            raise SendError(SendErrorKind.NOT_CONNECTED, "Gateway link is down")
        return await self._link.send(outbound)

    def begin_drain(self) -> None:
        """Stop delivering events; sends stay allowed while the link is up."""
        if self.draining:
            return
        logger.info("Draining gateway connection")
        self._drain_requested.set()
        self._machine.transition(ConnectionState.DRAINING)

    async def close(self) -> None:
        self.begin_drain()
        await self._link.close()
