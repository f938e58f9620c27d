"""Single-key advisory lock derived from compare-and-swap writes and TTL expiry.

The lock never caches whether it is held: every call is answered by the
store, and a handle only remembers its key, holder id and TTL.
"""

from __future__ import annotations

import math
import numbers
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Optional

from microlock.core.errors import (
    AlreadyLockedError,
    HolderRequiredError,
    InvalidTtlError,
    KeyRequiredError,
    LockContentionError,
    LockNotOwnedError,
    StoreRequiredError,
)
from microlock.core.events import EventName, Listener, LockEventBus
from microlock.core.models import LockEvent, LockEventRecord, LockOutcome, StoreResponse
from microlock.stores.base import CoordinationStore, StoreErrorCode
from microlock.utils.logging import get_logger

if TYPE_CHECKING:
    from microlock.core.settings import LockSettings


_ALREADY_EXISTS = frozenset({StoreErrorCode.NODE_EXIST})
# Absent key and value mismatch both mean "not the current holder".
_NOT_OWNED = frozenset({StoreErrorCode.KEY_NOT_FOUND, StoreErrorCode.TEST_FAILED})


def _error_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "error_code", None)
    if code is None:
        code = getattr(exc, "errorCode", None)
    return code if isinstance(code, int) else None


class Microlock:
    """Lock handle bound to one store key and one holder id.

    Concurrent calls on the same handle are not serialized; each one is sent
    to the store independently. ``destroy()`` must be called exactly once.
    """

    def __init__(self, store: CoordinationStore, key: str, holder_id: str, ttl: float = 1) -> None:
        if not store:
            raise StoreRequiredError()
        if not isinstance(key, str) or not key:
            raise KeyRequiredError()
        if not isinstance(holder_id, str) or not holder_id:
            raise HolderRequiredError()
        if isinstance(ttl, bool) or not isinstance(ttl, numbers.Real) or not math.isfinite(ttl):
            raise InvalidTtlError()

        self._store = store
        self._key = key
        self._holder_id = holder_id
        # Expiry-based liveness needs at least one second.
        self._ttl = ttl if ttl >= 1 else 1
        self.logger = get_logger("microlock")
        self._events = LockEventBus(key)

        self._watcher = store.watcher(key)
        self._watcher.on("compareAndDelete", self._on_compare_and_delete)
        self._watcher.on("change", self._on_change)
        self.logger.debug("Watching lock %s for holder %s (ttl=%s)", key, holder_id, self._ttl)

    @classmethod
    def from_settings(cls, settings: "LockSettings", store: CoordinationStore) -> "Microlock":
        return cls(store, settings.key, settings.holder_id, settings.ttl_seconds)

    @property
    def key(self) -> str:
        return self._key

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def ttl(self) -> float:
        return self._ttl

    def __repr__(self) -> str:
        return f"Microlock(key={self._key!r}, holder_id={self._holder_id!r}, ttl={self._ttl!r})"

    # Watch relay

    def _on_compare_and_delete(self, response: StoreResponse) -> None:
        self._events.emit(LockEvent.UNLOCKED)

    def _on_change(self, response: StoreResponse) -> None:
        if response.node is not None and response.node.ttl:
            self._events.emit(LockEvent.LOCKED)
        else:
            self.logger.debug("Ignoring %s notification on %s", response.action, self._key)

    # Event channel

    def on(self, event: EventName, listener: Listener) -> None:
        self._events.on(event, listener)

    def once(self, event: EventName, listener: Listener) -> None:
        self._events.once(event, listener)

    def off(self, event: EventName, listener: Listener) -> None:
        self._events.off(event, listener)

    def listener_count(self, event: EventName) -> int:
        return self._events.listener_count(event)

    def subscribe(self, *events: EventName, max_queue: int = 10) -> AsyncIterator[LockEventRecord]:
        return self._events.subscribe(*events, max_queue=max_queue)

    def destroy(self) -> None:
        """Stop the watch and drop every listener. Not idempotent."""
        self._watcher.stop()
        self._events.remove_all_listeners()
        self.logger.debug("Destroyed lock handle %s for %s", self._key, self._holder_id)

    # Protocol

    def _contention(self, error: LockContentionError) -> LockContentionError:
        self.logger.info("%s", error)
        self._events.emit(LockEvent.ERROR, error)
        return error

    async def lock(self) -> StoreResponse:
        """Create the key holding our id. Raises ``AlreadyLockedError`` if it exists."""
        try:
            response = await self._store.set(self._key, self._holder_id, ttl=self._ttl, prev_exist=False)
        except Exception as exc:
            if _error_code(exc) in _ALREADY_EXISTS:
                raise self._contention(AlreadyLockedError(self._key)) from exc
            raise
        self.logger.debug("Acquired %s as %s", self._key, self._holder_id)
        return response

    async def unlock(self) -> StoreResponse:
        """Delete the key if it still holds our id. Raises ``LockNotOwnedError`` otherwise."""
        try:
            response = await self._store.compare_and_delete(self._key, self._holder_id)
        except Exception as exc:
            if _error_code(exc) in _NOT_OWNED:
                raise self._contention(LockNotOwnedError(self._key, self._holder_id)) from exc
            raise
        self.logger.debug("Released %s as %s", self._key, self._holder_id)
        return response

    async def renew(self) -> StoreResponse:
        """Reset the TTL without rewriting the value. Raises ``LockNotOwnedError`` if not held."""
        try:
            response = await self._store.set(
                self._key,
                None,
                ttl=self._ttl,
                prev_value=self._holder_id,
                refresh=True,
            )
        except Exception as exc:
            if _error_code(exc) in _NOT_OWNED:
                raise self._contention(LockNotOwnedError(self._key, self._holder_id)) from exc
            raise
        self.logger.debug("Renewed %s for %ss", self._key, self._ttl)
        return response

    # Outcome form

    @staticmethod
    async def _outcome(operation: Callable[[], Awaitable[StoreResponse]]) -> LockOutcome:
        try:
            response = await operation()
        except LockContentionError as exc:
            return LockOutcome(ok=False, error_kind=exc.kind, error=str(exc))
        return LockOutcome(ok=True, response=response)

    async def try_lock(self) -> LockOutcome:
        return await self._outcome(self.lock)

    async def try_unlock(self) -> LockOutcome:
        return await self._outcome(self.unlock)

    async def try_renew(self) -> LockOutcome:
        return await self._outcome(self.renew)

    async def __aenter__(self) -> "Microlock":
        await self.lock()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            await self.unlock()
        except LockNotOwnedError:
            self.logger.warning("Lock %s was no longer held by %s on exit", self._key, self._holder_id)
