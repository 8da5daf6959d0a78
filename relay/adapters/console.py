"""
Console gateway link.

Reads lines from stdin as messages of a single local conversation and prints
replies to stdout. Lets an operator run the whole relay against a backend
without a Slack workspace.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import itertools
import sys
from typing import IO, Any, AsyncIterator, Awaitable, Callable, Optional

from relay.adapters.base import BaseGatewayLink, LinkItem
from relay.core.errors import ConnectError, SendError, SendErrorKind
from relay.infra.logging_config import get_logger
from relay.schemas.relay import (
    EventKind,
    InboundEvent,
    LinkClosed,
    OutboundMessage,
    OutboundSendResult,
)

logger = get_logger("console")

CONSOLE_CHANNEL = "console"
CONSOLE_USER = "local-user"
EXIT_COMMANDS = ("exit", "quit")


class ConsoleGatewayLink(BaseGatewayLink):
    """stdin in, stdout out, one fixed conversation."""

    def __init__(
        self,
        control_prefix: str = "!",
        input_file: Optional[IO[Any]] = None,
        output: Optional[IO[str]] = None,
        on_eof: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._control_prefix = control_prefix
        self._input = input_file if input_file is not None else sys.stdin
        self._output = output if output is not None else sys.stdout
        # Called once input ends; without it the event stream just closes
        self.on_eof = on_eof
        self._sequence = itertools.count(1)
        self._queue: Optional[asyncio.Queue[LinkItem]] = None
        self._pipe: Optional[asyncio.ReadTransport] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._connected = False
        self._input_closed = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._input_closed:
            raise ConnectError("console input is closed")
        readline = await self._open_input()
        self._queue = asyncio.Queue()
        self._connected = True
        self._reader_task = asyncio.create_task(
            self._read_lines(readline), name="console-reader"
        )
        self._print("Relay console. Type 'exit' to quit.")

    async def _open_input(self) -> Callable[[], Awaitable[Any]]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        try:
            self._pipe, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), self._input
            )
        except ValueError:
            # Regular files are not pipes; reading them does not block for long
            return functools.partial(loop.run_in_executor, None, self._input.readline)
        except OSError as e:
            raise ConnectError(f"cannot read console input: {e}") from e
        return reader.readline

    def events(self) -> AsyncIterator[LinkItem]:
        return self._read(self._queue)

    @staticmethod
    async def _read(queue: Optional[asyncio.Queue[LinkItem]]) -> AsyncIterator[LinkItem]:
        if queue is None:
            yield LinkClosed(reason="not connected")
            return
        while True:
            item = await queue.get()
            yield item
            if isinstance(item, LinkClosed):
                return

    async def send(self, outbound: OutboundMessage) -> OutboundSendResult:
        if not self._connected:
            raise SendError(SendErrorKind.NOT_CONNECTED, "Console link is not connected")
        if not outbound.text:
            return OutboundSendResult(success=True, platform_message_id=None)
        try:
            self._print(f"Assistant: {outbound.text}")
        except (OSError, ValueError) as e:
            raise SendError(SendErrorKind.TRANSPORT, f"console write failed: {e}") from e
        return OutboundSendResult(
            success=True,
            platform_message_id=f"{outbound.sequence}.{outbound.chunk}",
        )

    async def close(self) -> None:
        self._connected = False
        self._input_closed = True
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if self._pipe is not None:
            self._pipe.close()
            self._pipe = None
        self._closed("closed by client")

    def _closed(self, reason: str) -> None:
        if self._queue is not None:
            self._queue.put_nowait(LinkClosed(reason=reason))
            self._queue = None

    async def _read_lines(self, readline: Callable[[], Awaitable[Any]]) -> None:
        while True:
            raw = await readline()
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if not raw:
                break
            line = raw.strip()
            if line.lower() in EXIT_COMMANDS:
                break
            inbound = self.to_inbound(line)
            if inbound is not None and self._queue is not None:
                self._queue.put_nowait(inbound)
        logger.info("Console input ended")
        self._input_closed = True
        if self.on_eof is not None:
            # Output stays open so in-flight replies can still be printed
            self.on_eof()
        else:
            self._closed("end of input")

    def to_inbound(self, line: str) -> Optional[InboundEvent]:
        """Turn one input line into an event; None for blank lines."""
        if not line:
            return None
        sequence = next(self._sequence)
        kind = EventKind.MESSAGE
        if self._control_prefix and line.startswith(self._control_prefix):
            kind = EventKind.CONTROL
        return InboundEvent(
            sequence=sequence,
            kind=kind,
            channel=CONSOLE_CHANNEL,
            user_id=CONSOLE_USER,
            message_id=str(sequence),
            text=line,
        )

    def _print(self, text: str) -> None:
        print(text, file=self._output, flush=True)
