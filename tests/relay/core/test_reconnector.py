"""Tests for the connection state machine, backoff policy and Reconnector."""

import asyncio

import pytest

from relay.core.errors import SendError, SendErrorKind
from relay.core.reconnector import BackoffPolicy, ConnectionStateMachine, Reconnector
from relay.schemas.relay import ConnectionState, ConversationKey, OutboundMessage
from relay.services.outbound_dispatcher import OutboundDispatcher
from tests.fixtures.relay_fixtures import make_event, wait_until

FAST = BackoffPolicy(base=0.001, cap=0.001, jitter=0)


def test_backoff_is_non_decreasing_and_capped():
    policy = BackoffPolicy(base=1.0, cap=8.0, jitter=0)
    delays = [policy.delay(a) for a in range(8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0, 8.0, 8.0]
    assert delays == sorted(delays)


def test_backoff_jitter_is_added_on_top_of_the_cap():
    policy = BackoffPolicy(base=1.0, cap=4.0, jitter=0.5, rng=lambda lo, hi: hi)
    assert policy.delay(0) == 1.5
    assert policy.delay(10) == 4.5


def test_backoff_handles_very_large_attempts():
    policy = BackoffPolicy(base=1.0, cap=60.0, jitter=0)
    assert policy.delay(10_000) == 60.0


def test_state_machine_transitions():
    machine = ConnectionStateMachine()
    assert machine.state is ConnectionState.DISCONNECTED
    machine.transition(ConnectionState.CONNECTING)
    machine.transition(ConnectionState.CONNECTED)
    machine.transition(ConnectionState.DISCONNECTED)
    with pytest.raises(ValueError):
        machine.transition(ConnectionState.CONNECTED)
    machine.transition(ConnectionState.DRAINING)
    with pytest.raises(ValueError):
        machine.transition(ConnectionState.CONNECTING)


async def _consume(reconnector, received):
    async for event in reconnector.events():
        received.append(event)


@pytest.mark.asyncio
async def test_events_flow_while_connected(fake_link, observer):
    reconnector = Reconnector(fake_link, observer, backoff=FAST)
    received = []
    task = asyncio.create_task(_consume(reconnector, received))
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTED)

    event = make_event("hi")
    fake_link.push(event)
    await wait_until(lambda: received == [event])

    await reconnector.close()
    await asyncio.wait_for(task, 1.0)
    assert reconnector.state is ConnectionState.DRAINING
    assert fake_link.closed


@pytest.mark.asyncio
async def test_connect_failures_back_off_then_recover(fake_link, observer):
    fake_link.connect_failures = 3
    reconnector = Reconnector(fake_link, observer, backoff=FAST)
    task = asyncio.create_task(_consume(reconnector, []))
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTED)

    assert fake_link.connect_calls == 4
    assert [e["attempt"] for e in observer.of("reconnect_scheduled")] == [0, 1, 2]
    assert len(observer.of("connect_failed")) == 3
    assert reconnector.attempt == 3

    await reconnector.close()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_stable_connection_resets_attempt_counter(fake_link, observer):
    now = [0.0]
    fake_link.connect_failures = 2
    reconnector = Reconnector(
        fake_link,
        observer,
        backoff=FAST,
        stability_threshold=30.0,
        clock=lambda: now[0],
    )
    task = asyncio.create_task(_consume(reconnector, []))
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTED)
    assert reconnector.attempt == 2

    now[0] += 30.0
    fake_link.drop()
    await wait_until(lambda: len(observer.of("connected")) == 2)
    assert observer.of("reconnect_scheduled")[-1]["attempt"] == 0
    assert observer.of("link_closed")[0]["graceful"] is False

    await reconnector.close()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_unstable_connection_keeps_backing_off(fake_link, observer):
    now = [0.0]
    fake_link.connect_failures = 2
    reconnector = Reconnector(
        fake_link,
        observer,
        backoff=FAST,
        stability_threshold=30.0,
        clock=lambda: now[0],
    )
    task = asyncio.create_task(_consume(reconnector, []))
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTED)

    now[0] += 1.0
    fake_link.drop()
    await wait_until(lambda: len(observer.of("connected")) == 2)
    assert observer.of("reconnect_scheduled")[-1]["attempt"] == 2

    await reconnector.close()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_send_requires_connection(fake_link, observer):
    reconnector = Reconnector(fake_link, observer, backoff=FAST)
    message = OutboundMessage(key=ConversationKey(channel="C1"), sequence=1, text="x")
    with pytest.raises(SendError) as exc:
        await reconnector.send(message)
    assert exc.value.kind is SendErrorKind.NOT_CONNECTED


@pytest.mark.asyncio
async def test_undelivered_replies_flush_before_new_events(fake_link, observer):
    reconnector = Reconnector(fake_link, observer, backoff=FAST)
    dispatcher = OutboundDispatcher(reconnector, observer)
    reconnector.on_connected(dispatcher.flush_pending)

    snapshots = []

    async def consume():
        async for event in reconnector.events():
            snapshots.append((event.text, [m.text for m in fake_link.sent]))

    task = asyncio.create_task(consume())
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTED)

    # Drop and hold the next handshake so the reply lands while disconnected
    fake_link.connect_gate = asyncio.Event()
    fake_link.drop()
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTING)

    key = ConversationKey(channel="C1")
    await dispatcher.submit(OutboundMessage(key=key, sequence=1, text="queued reply"))
    assert dispatcher.undelivered_count == 1

    fake_link.queue_on_connect = [make_event("new message")]
    fake_link.connect_gate.set()
    await wait_until(lambda: len(snapshots) == 1)

    assert snapshots == [("new message", ["queued reply"])]
    assert dispatcher.undelivered_count == 0

    await reconnector.close()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_drain_stops_reconnecting(fake_link, observer):
    fake_link.connect_failures = 1000
    reconnector = Reconnector(
        fake_link, observer, backoff=BackoffPolicy(base=10.0, cap=10.0, jitter=0)
    )
    task = asyncio.create_task(_consume(reconnector, []))
    await wait_until(lambda: len(observer.of("reconnect_scheduled")) == 1)

    reconnector.begin_drain()
    await asyncio.wait_for(task, 1.0)
    assert fake_link.connect_calls == 1
    assert reconnector.draining


@pytest.mark.asyncio
async def test_failing_hook_does_not_stop_events(fake_link, observer):
    reconnector = Reconnector(fake_link, observer, backoff=FAST)
    calls = []

    async def broken_hook():
        raise RuntimeError("flush blew up")

    async def later_hook():
        calls.append("later")

    reconnector.on_connected(broken_hook)
    reconnector.on_connected(later_hook)

    received = []
    task = asyncio.create_task(_consume(reconnector, received))
    await wait_until(lambda: reconnector.state is ConnectionState.CONNECTED)

    event = make_event("still flowing")
    fake_link.push(event)
    await wait_until(lambda: received == [event])

    assert calls == ["later"]
    failures = observer.of("hook_failed")
    assert len(failures) == 1
    assert failures[0]["error"] == "flush blew up"
    assert not task.done()

    await reconnector.close()
    await asyncio.wait_for(task, 1.0)
