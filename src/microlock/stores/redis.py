"""Redis-backed coordination store using Lua compare-and-set scripts and pub/sub."""

from __future__ import annotations

import asyncio
import datetime as dt
import math
import os
from typing import Callable, Optional, Set

from pydantic import ValidationError
from redis.asyncio import Redis

from microlock.core.models import StoreNode, StoreResponse
from microlock.stores.base import BaseWatcher, StoreError, StoreErrorCode
from microlock.utils.logging import get_logger


logger = get_logger("microlock.store.redis")

# ARGV: value, ttl_ms|'', prev_exist ''|'0'|'1', has_prev_value '0'|'1', prev_value, channel, payload
_WRITE = """
local current = redis.call('get', KEYS[1])
if ARGV[3] == '0' and current then return 105 end
if (ARGV[3] == '1' or ARGV[4] == '1') and not current then return 100 end
if ARGV[4] == '1' and current ~= ARGV[5] then return 101 end
if ARGV[2] == '' then
    redis.call('set', KEYS[1], ARGV[1])
else
    redis.call('set', KEYS[1], ARGV[1], 'PX', ARGV[2])
end
redis.call('publish', ARGV[6], ARGV[7])
return 0
"""

# ARGV: prev_value, ttl_ms|''
_REFRESH = """
local current = redis.call('get', KEYS[1])
if not current then return 100 end
if current ~= ARGV[1] then return 101 end
if ARGV[2] == '' then
    redis.call('persist', KEYS[1])
else
    redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

# ARGV: prev_value, channel, payload
_COMPARE_AND_DELETE = """
local current = redis.call('get', KEYS[1])
if not current then return 100 end
if current ~= ARGV[1] then return 101 end
redis.call('del', KEYS[1])
redis.call('publish', ARGV[2], ARGV[3])
return 0
"""


def _ttl_ms(ttl: Optional[float]) -> str:
    return "" if ttl is None else str(int(ttl * 1000))


def _node(key: str, value: Optional[str], ttl: Optional[float]) -> StoreNode:
    if ttl is None:
        return StoreNode(key=key, value=value)
    return StoreNode(
        key=key,
        value=value,
        ttl=max(math.ceil(ttl), 1),
        expiration=dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=ttl),
    )


def _raise_for_code(code: int, key: str, prev_value: Optional[str]) -> None:
    if code == StoreErrorCode.NODE_EXIST:
        raise StoreError.node_exist(key)
    if code == StoreErrorCode.KEY_NOT_FOUND:
        raise StoreError.key_not_found(key)
    if code == StoreErrorCode.TEST_FAILED:
        raise StoreError.test_failed(key, prev_value or "")
    if code != 0:
        raise StoreError(int(code), "Unexpected script result", cause=key)


class RedisWatcher(BaseWatcher):
    """Relays the key's pub/sub channel. Must be created inside a running event loop.

    The subscription is opened by a background task after construction, so
    writes published before it is active are not relayed. A failed
    subscription is reopened after ``retry_delay`` seconds.
    """

    def __init__(
        self,
        redis: Redis,
        key: str,
        channel: str,
        *,
        retry_delay: float = 1.0,
        on_stop: Optional[Callable[[BaseWatcher], None]] = None,
    ) -> None:
        super().__init__(key)
        self._redis = redis
        self._channel = channel
        self._retry_delay = retry_delay
        self._on_stop = on_stop
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"microlock-watch-{key}")

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self._channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    response = StoreResponse.model_validate_json(message["data"])
                except ValidationError as exc:
                    logger.warning("Dropping malformed notification on %s: %s", self._channel, exc)
                    continue
                self.dispatch(response)
        finally:
            await pubsub.aclose()

    async def _run(self) -> None:
        while not self.stopped:
            try:
                await self._listen()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Watch on %s failed, retrying in %.1fs: %s", self.key, self._retry_delay, exc)
                await asyncio.sleep(self._retry_delay)

    def stop(self) -> None:
        super().stop()
        self._task.cancel()
        if self._on_stop:
            self._on_stop(self)


class RedisStore:
    """Store on a single Redis primary. Expiry is Redis' own ``PX``/``PEXPIRE``."""

    def __init__(self, redis: Redis, *, channel_prefix: str = "microlock:") -> None:
        self._redis = redis
        self._channel_prefix = channel_prefix
        self._write = redis.register_script(_WRITE)
        self._refresh = redis.register_script(_REFRESH)
        self._compare_and_delete = redis.register_script(_COMPARE_AND_DELETE)
        self._watchers: Set[RedisWatcher] = set()

    @classmethod
    def from_url(cls, url: Optional[str] = None, *, channel_prefix: str = "microlock:") -> "RedisStore":
        redis = Redis.from_url(url or os.getenv("REDIS_URL", "redis://localhost:6379/0"), decode_responses=True)
        return cls(redis, channel_prefix=channel_prefix)

    def channel(self, key: str) -> str:
        return f"{self._channel_prefix}{key}"

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
        if refresh:
            if prev_value is None:
                raise ValueError("refresh requires prev_value on the redis store")
            code = await self._refresh(keys=[key], args=[prev_value, _ttl_ms(ttl)])
            _raise_for_code(code, key, prev_value)
            return StoreResponse(action="update", node=_node(key, prev_value, ttl))

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
        response = StoreResponse(action=action, node=_node(key, value, ttl))
        code = await self._write(
            keys=[key],
            args=[
                value,
                _ttl_ms(ttl),
                "" if prev_exist is None else str(int(prev_exist)),
                "0" if prev_value is None else "1",
                prev_value or "",
                self.channel(key),
                response.model_dump_json(by_alias=True, exclude_none=True),
            ],
        )
        _raise_for_code(code, key, prev_value)
        return response

    async def compare_and_delete(self, key: str, prev_value: str) -> StoreResponse:
        response = StoreResponse(action="compareAndDelete", node=StoreNode(key=key))
        code = await self._compare_and_delete(
            keys=[key],
            args=[prev_value, self.channel(key), response.model_dump_json(by_alias=True, exclude_none=True)],
        )
        _raise_for_code(code, key, prev_value)
        return response

    def watcher(self, key: str) -> RedisWatcher:
        watcher = RedisWatcher(self._redis, key, self.channel(key), on_stop=self._watchers.discard)
        self._watchers.add(watcher)
        return watcher

    async def close(self) -> None:
        for watcher in list(self._watchers):
            watcher.stop()
        await self._redis.aclose()
