"""Lock handle, its errors, events and settings."""

from .errors import (
    AlreadyLockedError,
    HolderRequiredError,
    InvalidTtlError,
    KeyRequiredError,
    LockConfigurationError,
    LockContentionError,
    LockNotOwnedError,
    MicrolockError,
    StoreRequiredError,
)
from .events import LockEventBus
from .lock import Microlock
from .models import LockErrorKind, LockEvent, LockEventRecord, LockOutcome, StoreNode, StoreResponse
from .settings import LockSettings, StoreSettings

__all__ = [
    "AlreadyLockedError",
    "HolderRequiredError",
    "InvalidTtlError",
    "KeyRequiredError",
    "LockConfigurationError",
    "LockContentionError",
    "LockNotOwnedError",
    "MicrolockError",
    "StoreRequiredError",
    "LockEventBus",
    "Microlock",
    "LockErrorKind",
    "LockEvent",
    "LockEventRecord",
    "LockOutcome",
    "StoreNode",
    "StoreResponse",
    "LockSettings",
    "StoreSettings",
]
