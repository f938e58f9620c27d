from __future__ import annotations

import asyncio
from typing import Any, Dict, List
from urllib.parse import parse_qs

import httpx
import pytest

from microlock import AlreadyLockedError, LockEvent, LockNotOwnedError, Microlock
from microlock.stores.base import StoreError
from microlock.stores.etcd import EtcdStore


class FakeEtcd:
    """Answers key writes from canned bodies and watch polls from a queue."""

    def __init__(self) -> None:
        self.writes: List[httpx.Request] = []
        self.polls: List[httpx.Request] = []
        self.write_responses: List[httpx.Response] = []
        self.events: "asyncio.Queue[httpx.Response]" = asyncio.Queue()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.params.get("wait") == "true":
            self.polls.append(request)
            return await self.events.get()
        self.writes.append(request)
        return self.write_responses.pop(0)

    def store(self) -> EtcdStore:
        client = httpx.AsyncClient(base_url="http://etcd.test", transport=httpx.MockTransport(self))
        return EtcdStore("http://etcd.test", client=client)


def _form(request: httpx.Request) -> Dict[str, List[str]]:
    return parse_qs(request.content.decode())


def _error(status: int, code: int, message: str, index: int = 7) -> httpx.Response:
    return httpx.Response(status, json={"errorCode": code, "message": message, "cause": "/job", "index": index})


def _node(**fields: Any) -> Dict[str, Any]:
    return {"key": "/job", "modifiedIndex": 8, "createdIndex": 8, **fields}


async def _until(predicate) -> None:
    async def _spin() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_spin(), timeout=1)


async def _shutdown(store: EtcdStore) -> None:
    await store.close()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_lock_puts_with_prev_exist_false():
    etcd = FakeEtcd()
    etcd.write_responses.append(httpx.Response(201, json={"action": "create", "node": _node(value="n1", ttl=5)}))
    store = etcd.store()
    lock = Microlock(store, "job", "n1", 5)

    response = await lock.lock()

    request = etcd.writes[0]
    assert request.method == "PUT"
    assert request.url.path == "/v2/keys/job"
    assert _form(request) == {"value": ["n1"], "ttl": ["5"], "prevExist": ["false"]}
    assert response.node.ttl == 5
    assert response.node.modified_index == 8
    lock.destroy()
    await _shutdown(store)


@pytest.mark.asyncio
async def test_renew_sends_refresh_without_value():
    etcd = FakeEtcd()
    node = _node(value="n1", ttl=5, expiration="2026-10-19T12:01:21.874888581Z")
    etcd.write_responses.append(httpx.Response(200, json={"action": "update", "node": node}))
    store = etcd.store()
    lock = Microlock(store, "/job", "n1", 5)

    response = await lock.renew()

    assert _form(etcd.writes[0]) == {"ttl": ["5"], "prevValue": ["n1"], "refresh": ["true"]}
    assert response.node.expiration.microsecond == 874888
    lock.destroy()
    await _shutdown(store)


@pytest.mark.asyncio
async def test_unlock_deletes_with_prev_value():
    etcd = FakeEtcd()
    etcd.write_responses.append(
        httpx.Response(200, json={"action": "compareAndDelete", "node": _node(), "prevNode": _node(value="n1")})
    )
    store = etcd.store()
    lock = Microlock(store, "job", "n1", 5)

    response = await lock.unlock()

    request = etcd.writes[0]
    assert request.method == "DELETE"
    assert request.url.params["prevValue"] == "n1"
    assert response.prev_node.value == "n1"
    lock.destroy()
    await _shutdown(store)


@pytest.mark.asyncio
async def test_etcd_error_bodies_map_to_lock_errors():
    etcd = FakeEtcd()
    etcd.write_responses += [
        _error(412, 105, "Key already exists"),
        _error(412, 101, "Compare failed"),
        _error(404, 100, "Key not found"),
    ]
    store = etcd.store()
    lock = Microlock(store, "job", "n2", 5)

    with pytest.raises(AlreadyLockedError):
        await lock.lock()
    with pytest.raises(LockNotOwnedError):
        await lock.unlock()
    with pytest.raises(LockNotOwnedError):
        await lock.renew()
    lock.destroy()
    await _shutdown(store)


@pytest.mark.asyncio
async def test_unrecognized_etcd_errors_propagate():
    etcd = FakeEtcd()
    etcd.write_responses += [_error(500, 300, "Raft Internal Error"), httpx.Response(503, text="unavailable")]
    store = etcd.store()

    with pytest.raises(StoreError) as info:
        await store.set("job", "n1", ttl=5, prev_exist=False)
    assert info.value.error_code == 300
    with pytest.raises(httpx.HTTPStatusError):
        await store.set("job", "n1", ttl=5, prev_exist=False)
    await _shutdown(store)


@pytest.mark.asyncio
async def test_get_returns_none_for_missing_key():
    etcd = FakeEtcd()
    etcd.write_responses.append(_error(404, 100, "Key not found"))
    store = etcd.store()

    assert await store.get("job") is None
    await _shutdown(store)


@pytest.mark.asyncio
async def test_watch_relays_events_and_advances_wait_index():
    etcd = FakeEtcd()
    store = etcd.store()
    lock = Microlock(store, "job", "observer", 5)
    locked, unlocked = asyncio.Event(), asyncio.Event()
    lock.on(LockEvent.LOCKED, locked.set)
    lock.on(LockEvent.UNLOCKED, unlocked.set)

    await etcd.events.put(httpx.Response(200, json={"action": "create", "node": _node(value="n1", ttl=5)}))
    await asyncio.wait_for(locked.wait(), timeout=1)

    await etcd.events.put(
        httpx.Response(200, json={"action": "compareAndDelete", "node": {"key": "/job", "modifiedIndex": 9}})
    )
    await asyncio.wait_for(unlocked.wait(), timeout=1)

    await _until(lambda: len(etcd.polls) >= 3)
    assert "waitIndex" not in etcd.polls[0].url.params
    assert etcd.polls[1].url.params["waitIndex"] == "9"
    assert etcd.polls[2].url.params["waitIndex"] == "10"

    lock.destroy()
    await _shutdown(store)


@pytest.mark.asyncio
async def test_watch_resumes_after_index_cleared():
    etcd = FakeEtcd()
    store = etcd.store()
    watcher = store.watcher("job")

    await etcd.events.put(_error(400, 401, "The event in requested index is outdated and cleared", index=50))
    await _until(lambda: len(etcd.polls) >= 2)

    assert etcd.polls[1].url.params["waitIndex"] == "51"
    watcher.stop()
    await _shutdown(store)


@pytest.mark.asyncio
async def test_watch_skips_empty_long_poll_responses():
    etcd = FakeEtcd()
    store = etcd.store()
    watcher = store.watcher("job")
    seen = []
    watcher.on("change", seen.append)

    await etcd.events.put(httpx.Response(200, content=b""))
    await etcd.events.put(httpx.Response(200, json={"action": "set", "node": _node(value="x")}))
    await _until(lambda: bool(seen))

    assert seen[0].action == "set"
    assert "waitIndex" not in etcd.polls[1].url.params
    watcher.stop()
    await _shutdown(store)
