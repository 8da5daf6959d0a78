"""
OutboundDispatcher: per-conversation in-order delivery of backend replies.

Messages are released strictly by local sequence number per conversation.
Out-of-order arrivals are held until the gap closes or the gap timeout passes.
Replies that cannot be sent because the gateway is down are kept and flushed,
in order, once the gateway reconnects.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Optional, Protocol

from relay.core.errors import SendError, SendErrorKind
from relay.infra.logging_config import get_logger
from relay.infra.observer import Observer
from relay.schemas.relay import ConversationKey, OutboundMessage, OutboundSendResult

logger = get_logger("outbound")

FIRST_SEQUENCE = 1


class OutboundSender(Protocol):
    async def send(self, outbound: OutboundMessage) -> OutboundSendResult: ...


class OutboundDispatcher:
    def __init__(
        self,
        sender: OutboundSender,
        observer: Observer,
        gap_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sender = sender
        self._observer = observer
        self._gap_timeout = gap_timeout
        self._clock = clock
        self._expected: dict[ConversationKey, int] = {}
        self._held: dict[ConversationKey, dict[int, list[OutboundMessage]]] = {}
        self._gap_since: dict[ConversationKey, float] = {}
        self._undelivered: dict[ConversationKey, deque[OutboundMessage]] = {}
        self._locks: dict[ConversationKey, asyncio.Lock] = {}
        self.delivered = 0

    def _lock_for(self, key: ConversationKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def expected_sequence(self, key: ConversationKey) -> int:
        return self._expected.get(key, FIRST_SEQUENCE)

    @property
    def held_count(self) -> int:
        return sum(
            len(chunks) for held in self._held.values() for chunks in held.values()
        )

    @property
    def undelivered_count(self) -> int:
        return sum(len(q) for q in self._undelivered.values())

    def is_settled(self, key: ConversationKey) -> bool:
        """True when nothing is held or waiting for the gateway for this key."""
        return not self._held.get(key) and not self._undelivered.get(key)

    async def submit(self, message: OutboundMessage) -> None:
        key = message.key
        async with self._lock_for(key):
            expected = self.expected_sequence(key)
            if message.sequence > expected:
                self._hold(message)
                return
            if message.sequence < expected:
                # Its slot was skipped by a gap timeout; deliver late rather than lose it
                self._observer.emit(
                    "late_delivery",
                    conversation=str(key),
                    sequence=message.sequence,
                    expected=expected,
                )
                await self._deliver(message)
                return
            await self._deliver(message)
            if message.final:
                self._expected[key] = expected + 1
                await self._release(key)

    def _hold(self, message: OutboundMessage) -> None:
        held = self._held.setdefault(message.key, {})
        held.setdefault(message.sequence, []).append(message)
        self._gap_since.setdefault(message.key, self._clock())
        logger.debug(
            "Holding %s seq=%s (expecting %s)",
            message.key,
            message.sequence,
            self.expected_sequence(message.key),
        )

    async def _release(self, key: ConversationKey) -> None:
        """Deliver held messages that are now contiguous. Caller holds the key lock."""
        held = self._held.get(key)
        while held:
            expected = self.expected_sequence(key)
            chunks = held.pop(expected, None)
            if chunks is None:
                break
            for chunk in chunks:
                await self._deliver(chunk)
            if not chunks[-1].final:
                break
            self._expected[key] = expected + 1
        if held:
            self._gap_since[key] = self._clock()
        else:
            self._held.pop(key, None)
            self._gap_since.pop(key, None)

    async def _deliver(self, message: OutboundMessage) -> None:
        if message.is_marker:
            return
        key = message.key
        backlog = self._undelivered.get(key)
        if backlog:
            backlog.append(message)
            return
        try:
            await self._sender.send(message)
        except SendError as e:
            if e.kind is SendErrorKind.NOT_CONNECTED:
                self._undelivered.setdefault(key, deque()).append(message)
                self._observer.emit(
                    "send_deferred", conversation=str(key), sequence=message.sequence
                )
                return
            self._observer.emit(
                "send_failed",
                conversation=str(key),
                sequence=message.sequence,
                error=str(e),
            )
            return
        self.delivered += 1

    async def expire_gaps(self, now: Optional[float] = None) -> int:
        """Skip missing sequence numbers whose successors waited too long."""
        now = self._clock() if now is None else now
        expired = 0
        for key in list(self._gap_since):
            async with self._lock_for(key):
                since = self._gap_since.get(key)
                held = self._held.get(key)
                if since is None or not held or now - since < self._gap_timeout:
                    continue
                expected = self.expected_sequence(key)
                lowest = min(held)
                self._observer.emit(
                    "gap_timeout",
                    conversation=str(key),
                    missing_from=expected,
                    missing_to=lowest - 1,
                    waited=round(now - since, 3),
                )
                self._expected[key] = lowest
                await self._release(key)
                expired += 1
        return expired

    async def flush_pending(self) -> int:
        """Send replies kept while the gateway was down, oldest first per conversation."""
        flushed = 0
        for key in list(self._undelivered):
            async with self._lock_for(key):
                backlog = self._undelivered.get(key)
                while backlog:
                    message = backlog[0]
                    try:
                        await self._sender.send(message)
                    except SendError as e:
                        if e.kind is SendErrorKind.NOT_CONNECTED:
                            logger.info(
                                "Gateway still down; %d replies kept",
                                self.undelivered_count,
                            )
                            return flushed
                        self._observer.emit(
                            "send_failed",
                            conversation=str(key),
                            sequence=message.sequence,
                            error=str(e),
                        )
                    else:
                        flushed += 1
                        self.delivered += 1
                    backlog.popleft()
                self._undelivered.pop(key, None)
        if flushed:
            logger.info("Flushed %d deferred replies", flushed)
        return flushed

    def forget(self, key: ConversationKey) -> None:
        """Reset ordering state for a conversation whose session was reaped."""
        if not self.is_settled(key):
            return
        self._expected.pop(key, None)
        self._held.pop(key, None)
        self._gap_since.pop(key, None)
        self._undelivered.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    async def run_gap_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.expire_gaps()
