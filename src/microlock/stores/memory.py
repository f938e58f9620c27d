"""In-memory coordination store with etcd v2 semantics."""

from __future__ import annotations

import datetime as dt
import math
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from microlock.core.models import StoreNode, StoreResponse
from microlock.stores.base import BaseWatcher, StoreError


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: Optional[float]
    created_index: int
    modified_index: int


class MemoryWatcher(BaseWatcher):
    def __init__(self, store: "MemoryStore", key: str) -> None:
        super().__init__(key)
        self._store = store

    def stop(self) -> None:
        self._store._detach(self)
        super().stop()


class MemoryStore:
    """
    In-memory reference implementation.

    Used for:
    - Tests
    - Several handles sharing one process

    Expiry is evaluated lazily whenever a key is touched, using ``clock``.
    Watchers are notified synchronously after each mutation; TTL refreshes
    do not notify.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._watchers: Dict[str, Set[MemoryWatcher]] = defaultdict(set)
        self._index = 0

    def _next_index(self) -> int:
        self._index += 1
        return self._index

    def _node(self, key: str, entry: _Entry, *, with_value: bool = True) -> StoreNode:
        ttl = expiration = None
        if entry.expires_at is not None and with_value:
            remaining = max(entry.expires_at - self._clock(), 0.0)
            ttl = max(math.ceil(remaining), 1)
            expiration = dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=remaining)
        return StoreNode(
            key=key,
            value=entry.value if with_value else None,
            ttl=ttl,
            expiration=expiration,
            modified_index=entry.modified_index,
            created_index=entry.created_index,
        )

    def _notify(self, key: str, response: StoreResponse) -> None:
        for watcher in list(self._watchers.get(key, ())):
            watcher.dispatch(response)

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is None or entry.expires_at > self._clock():
            return entry
        del self._entries[key]
        prev = self._node(key, entry)
        entry.modified_index = self._next_index()
        self._notify(
            key,
            StoreResponse(action="expire", node=self._node(key, entry, with_value=False), prev_node=prev),
        )
        return None

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> Optional[StoreNode]:
        entry = self._live(key)
        return self._node(key, entry) if entry else None

    def purge_expired(self) -> List[str]:
        """Expire every due key now and return their names."""
        expired = []
        for key in list(self._entries):
            if self._live(key) is None:
                expired.append(key)
        return expired

    async def set(
        self,
        key: str,
        value: Optional[str],
        *,
        ttl: Optional[float] = None,
        prev_exist: Optional[bool] = None,
        prev_value: Optional[str] = None,
        refresh: bool = False,
    ) -> StoreResponse:
        entry = self._live(key)
        if prev_exist is False and entry is not None:
            raise StoreError.node_exist(key, self._index)
        if (prev_exist or prev_value is not None or refresh) and entry is None:
            raise StoreError.key_not_found(key, self._index)
        if prev_value is not None and entry.value != prev_value:
            raise StoreError.test_failed(key, prev_value, self._index)

        if refresh:
            prev = self._node(key, entry)
            entry.expires_at = self._expiry(ttl)
            entry.modified_index = self._next_index()
            return StoreResponse(action="update", node=self._node(key, entry), prev_node=prev)

        if value is None:
            raise ValueError("value is required unless refresh=True")

        if prev_exist is False:
            action = "create"
        elif prev_value is not None:
            action = "compareAndSwap"
        elif prev_exist:
            action = "update"
        else:
            action = "set"

        prev = self._node(key, entry) if entry else None
        index = self._next_index()
        created_index = entry.created_index if entry else index
        entry = _Entry(value=value, expires_at=self._expiry(ttl), created_index=created_index, modified_index=index)
        self._entries[key] = entry
        response = StoreResponse(action=action, node=self._node(key, entry), prev_node=prev)
        self._notify(key, response)
        return response

    async def compare_and_delete(self, key: str, prev_value: str) -> StoreResponse:
        entry = self._live(key)
        if entry is None:
            raise StoreError.key_not_found(key, self._index)
        if entry.value != prev_value:
            raise StoreError.test_failed(key, prev_value, self._index)
        del self._entries[key]
        prev = self._node(key, entry)
        entry.modified_index = self._next_index()
        response = StoreResponse(
            action="compareAndDelete",
            node=self._node(key, entry, with_value=False),
            prev_node=prev,
        )
        self._notify(key, response)
        return response

    def watcher(self, key: str) -> MemoryWatcher:
        watcher = MemoryWatcher(self, key)
        self._watchers[key].add(watcher)
        return watcher

    def _detach(self, watcher: MemoryWatcher) -> None:
        watchers = self._watchers.get(watcher.key)
        if watchers is not None:
            watchers.discard(watcher)

    async def close(self) -> None:
        for watchers in list(self._watchers.values()):
            for watcher in list(watchers):
                watcher.stop()
        self._watchers.clear()
