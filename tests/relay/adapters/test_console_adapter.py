"""Tests for ConsoleGatewayLink."""

import asyncio
import functools
import io
import os

import pytest

from relay.adapters.console import CONSOLE_CHANNEL, ConsoleGatewayLink
from relay.config import Settings
from relay.core.conversation_key import build_conversation_key
from relay.core.errors import ConnectError, SendError, SendErrorKind
from relay.core.runtime import Runtime
from relay.schemas.relay import (
    ConversationKey,
    EventKind,
    InboundEvent,
    LinkClosed,
    OutboundMessage,
)
from relay.workers.backend import BackendClient
from tests.fixtures.relay_fixtures import wait_until


class Pipe:
    """An os.pipe standing in for stdin."""

    def __init__(self):
        read_fd, self._write_fd = os.pipe()
        self.reader = os.fdopen(read_fd, "rb", buffering=0)
        self._writer_open = True

    def write(self, data):
        os.write(self._write_fd, data)

    def close_writer(self):
        if self._writer_open:
            self._writer_open = False
            os.close(self._write_fd)


@pytest.fixture
def pipe():
    p = Pipe()
    yield p
    p.close_writer()
    p.reader.close()


def console_link(pipe, **kwargs):
    return ConsoleGatewayLink(input_file=pipe.reader, output=io.StringIO(), **kwargs)


async def next_event(stream):
    return await asyncio.wait_for(stream.__anext__(), 1.0)


def test_to_inbound_uses_fixed_conversation():
    link = ConsoleGatewayLink(output=io.StringIO())
    event = link.to_inbound("hello")
    assert event.kind is EventKind.MESSAGE
    assert event.channel == CONSOLE_CHANNEL
    assert build_conversation_key(event) == ConversationKey(channel="console")
    assert link.to_inbound("!reset").kind is EventKind.CONTROL
    assert link.to_inbound("") is None


@pytest.mark.asyncio
async def test_input_lines_become_events(pipe):
    link = console_link(pipe)
    await link.connect()
    assert link.is_connected
    stream = link.events()

    pipe.write(b"hello\n\n  !reset  \n")
    first = await next_event(stream)
    second = await next_event(stream)

    assert isinstance(first, InboundEvent)
    assert (first.text, first.kind) == ("hello", EventKind.MESSAGE)
    assert (second.text, second.kind) == ("!reset", EventKind.CONTROL)
    assert second.sequence == first.sequence + 1

    await link.close()
    closed = await next_event(stream)
    assert isinstance(closed, LinkClosed)
    assert closed.graceful


@pytest.mark.asyncio
async def test_send_prints_reply(pipe):
    link = console_link(pipe)
    with pytest.raises(SendError) as exc:
        await link.send(OutboundMessage(key=ConversationKey(channel="console"), sequence=1, text="x"))
    assert exc.value.kind is SendErrorKind.NOT_CONNECTED

    await link.connect()
    key = ConversationKey(channel="console")
    result = await link.send(OutboundMessage(key=key, sequence=1, text="hi there"))
    await link.send(OutboundMessage(key=key, sequence=2, text=""))
    await link.close()

    assert result.success
    lines = link._output.getvalue().splitlines()
    assert lines[-1] == "Assistant: hi there"
    assert len([line for line in lines if line.startswith("Assistant:")]) == 1


@pytest.mark.asyncio
async def test_end_of_input_without_hook_closes_stream(pipe):
    link = console_link(pipe)
    await link.connect()
    stream = link.events()

    pipe.write(b"last words\n")
    pipe.close_writer()
    event = await next_event(stream)
    closed = await next_event(stream)

    assert event.text == "last words"
    assert isinstance(closed, LinkClosed)
    assert closed.reason == "end of input"
    with pytest.raises(ConnectError):
        await link.connect()
    await link.close()


@pytest.mark.asyncio
async def test_exit_command_calls_eof_hook_and_keeps_output(pipe):
    ended = []
    link = console_link(pipe, on_eof=lambda: ended.append(True))
    await link.connect()

    pipe.write(b"exit\n")
    await wait_until(lambda: ended == [True])

    # Replies to earlier input can still be printed
    assert link.is_connected
    await link.send(OutboundMessage(key=ConversationKey(channel="console"), sequence=1, text="bye"))
    assert link._output.getvalue().splitlines()[-1] == "Assistant: bye"
    await link.close()


@pytest.mark.asyncio
async def test_console_runtime_relays_and_stops_at_end_of_input(
    pipe, fake_transport, observer
):
    link = console_link(pipe)
    settings = Settings(
        _env_file=None,
        gateway="console",
        backend_url="http://agent:8080",
        shutdown_grace_seconds=1.0,
        outbound_sweep_interval_seconds=0.01,
    )
    runtime = Runtime(
        settings, link, BackendClient(fake_transport, observer, retry_delay=0), observer=observer
    )
    link.on_eof = functools.partial(runtime.request_shutdown, "end of console input")
    task = asyncio.create_task(runtime.run())

    await wait_until(lambda: link.is_connected)
    pipe.write(b"hello\n")
    await wait_until(lambda: "Assistant: echo: hello" in link._output.getvalue())
    assert fake_transport.requests[0].conversation == "console"

    pipe.close_writer()
    await asyncio.wait_for(task, 2.0)
    assert not link.is_connected
