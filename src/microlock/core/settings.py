"""Lock settings loader."""

from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class StoreSettings(BaseModel):
    backend: Literal["memory", "redis", "etcd"] = "memory"
    url: Optional[str] = None  # falls back to REDIS_URL / ETCD_URL
    channel_prefix: str = "microlock:"  # redis pub/sub channel per key
    timeout: float = Field(default=5.0, gt=0)


class LockSettings(BaseModel):
    key: str = Field(min_length=1)
    holder_id: str = Field(default_factory=default_holder_id, min_length=1)
    ttl_seconds: int = 1
    store: StoreSettings = Field(default_factory=StoreSettings)

    @classmethod
    def from_file(cls, path: Path) -> "LockSettings":
        data = yaml.safe_load(path.read_text()) or {}
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid lock settings: {exc}") from exc
