"""Exceptions raised by lock handles."""

from __future__ import annotations

from microlock.core.models import LockErrorKind


class MicrolockError(Exception):
    """Base class for every error raised by microlock itself."""


class LockConfigurationError(MicrolockError, TypeError):
    """Invalid constructor arguments. Retrying with the same inputs never helps."""


class StoreRequiredError(LockConfigurationError):
    def __init__(self) -> None:
        super().__init__("store client parameter is required")


class KeyRequiredError(LockConfigurationError):
    def __init__(self) -> None:
        super().__init__("key parameter of type str is required")


class HolderRequiredError(LockConfigurationError):
    def __init__(self) -> None:
        super().__init__("holder_id parameter of type str is required")


class InvalidTtlError(LockConfigurationError):
    def __init__(self) -> None:
        super().__init__("ttl parameter must be a number")


class LockContentionError(MicrolockError):
    """Expected outcome of a compare-and-swap race."""

    kind: LockErrorKind

    def __init__(self, message: str, key: str) -> None:
        super().__init__(message)
        self.key = key


class AlreadyLockedError(LockContentionError):
    kind = LockErrorKind.ALREADY_LOCKED

    def __init__(self, key: str) -> None:
        super().__init__(f'Lock "{key}" is already locked', key)


class LockNotOwnedError(LockContentionError):
    kind = LockErrorKind.NOT_OWNED

    def __init__(self, key: str, holder_id: str) -> None:
        super().__init__(f'Lock "{key}" is not owned by node "{holder_id}"', key)
        self.holder_id = holder_id
