"""Coordination store backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import BaseWatcher, CoordinationStore, StoreError, StoreErrorCode, StoreWatcher
from .memory import MemoryStore

if TYPE_CHECKING:
    from microlock.core.settings import StoreSettings


def build_store(settings: "StoreSettings") -> CoordinationStore:
    """Instantiate the backend named by ``settings.backend``."""
    if settings.backend == "memory":
        return MemoryStore()
    if settings.backend == "redis":
        from .redis import RedisStore

        return RedisStore.from_url(settings.url, channel_prefix=settings.channel_prefix)
    if settings.backend == "etcd":
        from .etcd import EtcdStore

        return EtcdStore(settings.url, timeout=settings.timeout)
    raise ValueError(f"Unknown store backend: {settings.backend}")


__all__ = [
    "BaseWatcher",
    "CoordinationStore",
    "MemoryStore",
    "StoreError",
    "StoreErrorCode",
    "StoreWatcher",
    "build_store",
]
