"""Data models shared across microlock."""

from __future__ import annotations

import datetime as dt
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


_NANOS = re.compile(r"(\.\d{6})\d+")


class LockEvent(str, Enum):
    """Events relayed by a lock handle."""

    LOCKED = "locked"
    UNLOCKED = "unlocked"
    ERROR = "error"


class LockErrorKind(str, Enum):
    ALREADY_LOCKED = "already_locked"
    NOT_OWNED = "not_owned"


class StoreNode(BaseModel):
    """A key as reported by the coordination store."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    value: Optional[str] = None
    ttl: Optional[int] = None
    expiration: Optional[dt.datetime] = None
    modified_index: Optional[int] = Field(default=None, alias="modifiedIndex")
    created_index: Optional[int] = Field(default=None, alias="createdIndex")

    @field_validator("expiration", mode="before")
    @classmethod
    def trim_nanoseconds(cls, value: Any) -> Any:
        # etcd reports nanosecond precision
        if isinstance(value, str):
            return _NANOS.sub(r"\1", value)
        return value


class StoreResponse(BaseModel):
    """Acknowledgement of a store write, also the payload of watch notifications."""

    model_config = ConfigDict(populate_by_name=True)

    action: str
    node: Optional[StoreNode] = None
    prev_node: Optional[StoreNode] = Field(default=None, alias="prevNode")

    @property
    def index(self) -> Optional[int]:
        return self.node.modified_index if self.node else None


class LockEventRecord(BaseModel):
    """Item yielded by ``LockEventBus.subscribe``."""

    event: LockEvent
    key: str
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    payload: Any = None


class LockOutcome(BaseModel):
    """Result form of a lock operation, for callers that branch instead of catching."""

    ok: bool
    response: Optional[StoreResponse] = None
    error_kind: Optional[LockErrorKind] = None
    error: Optional[str] = None
