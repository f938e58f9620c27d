"""In-process observer channel for lock events."""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Set, Union

from microlock.core.models import LockEvent, LockEventRecord
from microlock.utils.logging import get_logger


Listener = Callable[..., Any]
EventName = Union[LockEvent, str]

_CLOSED = object()


@dataclass(slots=True, eq=False)
class _Subscription:
    queue: "asyncio.Queue[Any]"
    events: FrozenSet[LockEvent]


def _put_latest(queue: "asyncio.Queue[Any]", item: Any) -> None:
    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        # Backpressure: drop oldest so the newest state transition is kept.
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        queue.put_nowait(item)


class LockEventBus:
    """Listener registry plus queue-backed async subscriptions for one lock key."""

    def __init__(self, key: str) -> None:
        self._key = key
        self._listeners: Dict[LockEvent, List[Listener]] = defaultdict(list)
        self._subscriptions: Set[_Subscription] = set()
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self.logger = get_logger("microlock.events")

    def on(self, event: EventName, listener: Listener) -> None:
        self._listeners[LockEvent(event)].append(listener)

    def once(self, event: EventName, listener: Listener) -> None:
        event = LockEvent(event)

        def _wrapper(*args: Any) -> Any:
            self.off(event, _wrapper)
            return listener(*args)

        self.on(event, _wrapper)

    def off(self, event: EventName, listener: Listener) -> None:
        listeners = self._listeners.get(LockEvent(event))
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: EventName) -> int:
        return len(self._listeners.get(LockEvent(event), ()))

    def emit(self, event: EventName, payload: Any = None) -> None:
        event = LockEvent(event)
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(payload) if payload is not None else listener()
                if inspect.isawaitable(result):
                    self._track(event, asyncio.ensure_future(result))
            except Exception as exc:
                self.logger.exception("Listener for %s on %s failed: %s", event.value, self._key, exc)

        if not self._subscriptions:
            return
        record = LockEventRecord(event=event, key=self._key, payload=payload)
        for subscription in list(self._subscriptions):
            if event in subscription.events:
                _put_latest(subscription.queue, record)

    def _track(self, event: LockEvent, task: "asyncio.Future[Any]") -> None:
        self._tasks.add(task)

        def _done(finished: "asyncio.Future[Any]") -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                self.logger.error(
                    "Listener for %s on %s failed: %s", event.value, self._key, exc, exc_info=exc
                )

        task.add_done_callback(_done)

    def subscribe(self, *events: EventName, max_queue: int = 10) -> AsyncIterator[LockEventRecord]:
        """Stream events as records. Registration is immediate, not on first iteration."""
        wanted = frozenset(LockEvent(e) for e in events) or frozenset(LockEvent)
        subscription = _Subscription(queue=asyncio.Queue(max_queue), events=wanted)
        self._subscriptions.add(subscription)
        return self._drain(subscription)

    async def _drain(self, subscription: _Subscription) -> AsyncIterator[LockEventRecord]:
        try:
            while True:
                item = await subscription.queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._subscriptions.discard(subscription)

    def remove_all_listeners(self) -> None:
        """Drop every listener and end every active subscription."""
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
        subscriptions = list(self._subscriptions)
        self._subscriptions.clear()
        for subscription in subscriptions:
            _put_latest(subscription.queue, _CLOSED)
