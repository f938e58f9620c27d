"""Advisory single-key lock on top of a compare-and-swap coordination store."""

from .core import (
    AlreadyLockedError,
    HolderRequiredError,
    InvalidTtlError,
    KeyRequiredError,
    LockConfigurationError,
    LockContentionError,
    LockErrorKind,
    LockEvent,
    LockEventRecord,
    LockNotOwnedError,
    LockOutcome,
    LockSettings,
    MicrolockError,
    Microlock,
    StoreRequiredError,
    StoreResponse,
    StoreSettings,
)
from .stores import CoordinationStore, MemoryStore, StoreError, StoreErrorCode, build_store

events = LockEvent

__all__ = [
    "__version__",
    "AlreadyLockedError",
    "CoordinationStore",
    "HolderRequiredError",
    "InvalidTtlError",
    "KeyRequiredError",
    "LockConfigurationError",
    "LockContentionError",
    "LockErrorKind",
    "LockEvent",
    "LockEventRecord",
    "LockNotOwnedError",
    "LockOutcome",
    "LockSettings",
    "MemoryStore",
    "MicrolockError",
    "Microlock",
    "StoreError",
    "StoreErrorCode",
    "StoreRequiredError",
    "StoreResponse",
    "StoreSettings",
    "build_store",
    "events",
]

__version__ = "0.1.0"
