from __future__ import annotations

import asyncio
import logging

import pytest

from microlock.core.events import LockEventBus
from microlock.core.models import LockEvent


def test_once_listener_fires_a_single_time():
    bus = LockEventBus("foo")
    calls = []
    bus.once("locked", lambda: calls.append("locked"))

    bus.emit(LockEvent.LOCKED)
    bus.emit(LockEvent.LOCKED)

    assert calls == ["locked"]
    assert bus.listener_count("locked") == 0


def test_off_removes_listener():
    bus = LockEventBus("foo")
    calls = []
    listener = lambda: calls.append(1)  # noqa: E731
    bus.on(LockEvent.UNLOCKED, listener)
    bus.off(LockEvent.UNLOCKED, listener)

    bus.emit(LockEvent.UNLOCKED)

    assert calls == []


def test_unknown_event_name_is_rejected():
    bus = LockEventBus("foo")
    with pytest.raises(ValueError):
        bus.on("acquired", lambda: None)


def test_failing_listener_does_not_block_others():
    bus = LockEventBus("foo")
    calls = []

    def broken() -> None:
        raise RuntimeError("boom")

    bus.on(LockEvent.LOCKED, broken)
    bus.on(LockEvent.LOCKED, lambda: calls.append("ok"))
    bus.emit(LockEvent.LOCKED)

    assert calls == ["ok"]


def test_error_listeners_receive_the_exception():
    bus = LockEventBus("foo")
    received = []
    bus.on(LockEvent.ERROR, received.append)
    error = RuntimeError("contention")

    bus.emit(LockEvent.ERROR, error)

    assert received == [error]


@pytest.mark.asyncio
async def test_coroutine_listeners_are_scheduled():
    bus = LockEventBus("foo")
    done = asyncio.Event()

    async def listener() -> None:
        done.set()

    bus.on(LockEvent.LOCKED, listener)
    bus.emit(LockEvent.LOCKED)

    await asyncio.wait_for(done.wait(), timeout=1)


@pytest.mark.asyncio
async def test_subscription_filters_event_types():
    bus = LockEventBus("foo")
    stream = bus.subscribe(LockEvent.UNLOCKED)

    bus.emit(LockEvent.LOCKED)
    bus.emit(LockEvent.UNLOCKED)

    record = await asyncio.wait_for(stream.__anext__(), timeout=1)
    assert record.event is LockEvent.UNLOCKED


@pytest.mark.asyncio
async def test_full_subscription_keeps_newest_records():
    bus = LockEventBus("foo")
    stream = bus.subscribe(max_queue=1)

    bus.emit(LockEvent.LOCKED)
    bus.emit(LockEvent.UNLOCKED)

    record = await asyncio.wait_for(stream.__anext__(), timeout=1)
    assert record.event is LockEvent.UNLOCKED


@pytest.mark.asyncio
async def test_remove_all_listeners_ends_subscriptions():
    bus = LockEventBus("foo")
    stream = bus.subscribe()

    bus.remove_all_listeners()

    received = [record async for record in stream]
    assert received == []


class _RecordingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.mark.asyncio
async def test_failing_coroutine_listener_is_logged():
    bus = LockEventBus("foo")
    handler = _RecordingHandler()
    bus.logger.addHandler(handler)

    async def broken() -> None:
        raise RuntimeError("boom")

    try:
        bus.on(LockEvent.LOCKED, broken)
        bus.emit(LockEvent.LOCKED)
        for _ in range(5):
            await asyncio.sleep(0)

        messages = [record.getMessage() for record in handler.records]
        assert any("boom" in message for message in messages)
    finally:
        bus.logger.removeHandler(handler)


@pytest.mark.asyncio
async def test_remove_all_listeners_cancels_pending_coroutines():
    bus = LockEventBus("foo")
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow() -> None:
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    bus.on(LockEvent.LOCKED, slow)
    bus.emit(LockEvent.LOCKED)
    await asyncio.wait_for(started.wait(), timeout=1)

    bus.remove_all_listeners()

    await asyncio.wait_for(cancelled.wait(), timeout=1)
