"""Abstract interfaces for coordination stores backing a lock."""

from __future__ import annotations

from collections import defaultdict
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Protocol

from microlock.core.models import StoreResponse
from microlock.utils.logging import get_logger


logger = get_logger("microlock.store")

WatchCallback = Callable[[StoreResponse], Any]


class StoreErrorCode(IntEnum):
    """Conflict codes shared by every bundled store (etcd v2 numbering)."""

    KEY_NOT_FOUND = 100
    TEST_FAILED = 101
    NODE_EXIST = 105


class StoreError(Exception):
    """Error reported by the coordination store itself."""

    def __init__(
        self,
        error_code: int,
        message: str,
        *,
        cause: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        super().__init__(f"{message} ({cause})" if cause else message)
        self.error_code = error_code
        self.message = message
        self.cause = cause
        self.index = index

    @classmethod
    def key_not_found(cls, key: str, index: Optional[int] = None) -> "StoreError":
        return cls(StoreErrorCode.KEY_NOT_FOUND, "Key not found", cause=key, index=index)

    @classmethod
    def test_failed(cls, key: str, expected: str, index: Optional[int] = None) -> "StoreError":
        return cls(StoreErrorCode.TEST_FAILED, "Compare failed", cause=f"[{expected}] {key}", index=index)

    @classmethod
    def node_exist(cls, key: str, index: Optional[int] = None) -> "StoreError":
        return cls(StoreErrorCode.NODE_EXIST, "Key already exists", cause=key, index=index)


class StoreWatcher(Protocol):
    def on(self, event: str, callback: WatchCallback) -> None: ...
    def off(self, event: str, callback: WatchCallback) -> None: ...
    def stop(self) -> None: ...


class CoordinationStore(Protocol):
    """Minimal capability set a lock needs from its store."""

    async def set(
        self,
        key: str,
        value: Optional[str],
        *,
        ttl: Optional[float] = None,
        prev_exist: Optional[bool] = None,
        prev_value: Optional[str] = None,
        refresh: bool = False,
    ) -> StoreResponse:  # pragma: no cover - interface
        ...

    async def compare_and_delete(self, key: str, prev_value: str) -> StoreResponse:  # pragma: no cover - interface
        ...

    def watcher(self, key: str) -> StoreWatcher:  # pragma: no cover - interface
        ...

    async def close(self) -> None:  # pragma: no cover - interface
        ...


class BaseWatcher:
    """Callback registry shared by the bundled watchers.

    Every notification is delivered as ``change`` and again under its
    action name (``create``, ``compareAndDelete``, ``expire``...).
    """

    def __init__(self, key: str) -> None:
        self.key = key
        self._callbacks: Dict[str, List[WatchCallback]] = defaultdict(list)
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def on(self, event: str, callback: WatchCallback) -> None:
        self._callbacks[event].append(callback)

    def off(self, event: str, callback: WatchCallback) -> None:
        callbacks = self._callbacks.get(event)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    def stop(self) -> None:
        self._stopped = True
        self._callbacks.clear()

    def dispatch(self, response: StoreResponse) -> None:
        if self._stopped:
            return
        for event in ("change", response.action):
            for callback in list(self._callbacks.get(event, ())):
                try:
                    callback(response)
                except Exception as exc:
                    logger.exception("Watch callback for %s failed: %s", self.key, exc)
