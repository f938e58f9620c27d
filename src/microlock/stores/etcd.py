"""etcd v2 keys API client on httpx."""

from __future__ import annotations

import asyncio
import math
import os
from typing import Any, Callable, Dict, Optional, Set

import httpx
from pydantic import ValidationError

from microlock.core.models import StoreResponse
from microlock.stores.base import BaseWatcher, StoreError, StoreErrorCode
from microlock.utils.logging import get_logger


logger = get_logger("microlock.store.etcd")

_EVENT_INDEX_CLEARED = 401


def _key_path(key: str) -> str:
    return f"/v2/keys/{key.lstrip('/')}"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _store_error(body: Dict[str, Any]) -> StoreError:
    return StoreError(
        int(body["errorCode"]),
        body.get("message", "etcd error"),
        cause=body.get("cause"),
        index=body.get("index"),
    )


def _parse(response: httpx.Response) -> StoreResponse:
    try:
        body = response.json()
    except ValueError:
        response.raise_for_status()
        raise
    if isinstance(body, dict) and "errorCode" in body:
        raise _store_error(body)
    response.raise_for_status()
    return StoreResponse.model_validate(body)


class EtcdWatcher(BaseWatcher):
    """Long-polls ``?wait=true`` for the key. Must be created inside a running event loop."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        key: str,
        *,
        timeout: float = 5.0,
        retry_delay: float = 1.0,
        on_stop: Optional[Callable[[BaseWatcher], None]] = None,
    ) -> None:
        super().__init__(key)
        self._client = client
        self._path = _key_path(key)
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._on_stop = on_stop
        self._wait_index: Optional[int] = None
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"microlock-watch-{key}")

    async def _poll(self) -> Optional[StoreResponse]:
        params = {"wait": "true"}
        if self._wait_index is not None:
            params["waitIndex"] = str(self._wait_index)
        response = await self._client.get(
            self._path,
            params=params,
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        if not response.content.strip():
            # etcd closed the long poll without an event
            return None
        body = response.json()
        if "errorCode" in body:
            if body["errorCode"] == _EVENT_INDEX_CLEARED:
                index = body.get("index")
                self._wait_index = index + 1 if isinstance(index, int) else None
                logger.info("Watch index on %s was cleared, resuming from %s", self.key, self._wait_index)
                return None
            raise _store_error(body)
        return StoreResponse.model_validate(body)

    async def _run(self) -> None:
        while not self.stopped:
            try:
                notification = await self._poll()
            except asyncio.CancelledError:
                raise
            except (httpx.ReadTimeout, httpx.RemoteProtocolError):
                continue
            except (httpx.HTTPError, StoreError, ValidationError, ValueError) as exc:
                logger.warning("Watch on %s failed, retrying in %.1fs: %s", self.key, self._retry_delay, exc)
                await asyncio.sleep(self._retry_delay)
                continue
            if notification is None:
                continue
            if notification.index is not None:
                self._wait_index = notification.index + 1
            self.dispatch(notification)

    def stop(self) -> None:
        super().stop()
        self._task.cancel()
        if self._on_stop:
            self._on_stop(self)


class EtcdStore:
    """etcd v2 store. Error bodies become ``StoreError`` with etcd's own codes."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("ETCD_URL", "http://127.0.0.1:2379")).rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._watchers: Set[EtcdWatcher] = set()

    async def get(self, key: str) -> Optional[StoreResponse]:
        response = await self._client.get(_key_path(key))
        try:
            return _parse(response)
        except StoreError as exc:
            if exc.error_code == StoreErrorCode.KEY_NOT_FOUND:
                return None
            raise

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
        data: Dict[str, str] = {}
        if value is not None:
            data["value"] = value
        if ttl is not None:
            data["ttl"] = str(math.ceil(ttl))
        if prev_exist is not None:
            data["prevExist"] = _flag(prev_exist)
        if prev_value is not None:
            data["prevValue"] = prev_value
        if refresh:
            data["refresh"] = "true"
        response = await self._client.put(_key_path(key), data=data)
        return _parse(response)

    async def compare_and_delete(self, key: str, prev_value: str) -> StoreResponse:
        response = await self._client.delete(_key_path(key), params={"prevValue": prev_value})
        return _parse(response)

    def watcher(self, key: str) -> EtcdWatcher:
        watcher = EtcdWatcher(self._client, key, timeout=self.timeout, on_stop=self._watchers.discard)
        self._watchers.add(watcher)
        return watcher

    async def close(self) -> None:
        for watcher in list(self._watchers):
            watcher.stop()
        await self._client.aclose()
