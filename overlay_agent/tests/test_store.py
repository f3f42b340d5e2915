from __future__ import annotations

import base64
import json
from types import SimpleNamespace

import httpx
import pytest

from overlay_agent.errors import StoreError, StoreUnavailableError
from overlay_agent.store import EtcdV2Store, EtcdV3Store, create_store, prefix_range_end


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def _decode(text: str) -> str:
    return base64.b64decode(text).decode()


def _v3_store(handler) -> EtcdV3Store:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://etcd")
    return EtcdV3Store("http://etcd", retry_count=2, retry_delay=0, client=client)


def test_prefix_range_end_increments_last_byte():
    assert prefix_range_end("/coreos.com/network/subnets/") == b"/coreos.com/network/subnets0"
    assert prefix_range_end("") == b"\x00"


@pytest.mark.asyncio
async def test_v3_list_keys_uses_prefix_range():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.update(body)
        return httpx.Response(
            200,
            json={
                "kvs": [
                    {"key": _b64("/coreos.com/network/subnets/10.5.9.0-24")},
                    {"key": _b64("/coreos.com/network/subnets/10.5.8.0-24")},
                ]
            },
        )

    store = _v3_store(handler)
    keys = await store.list_keys("/coreos.com/network/subnets/")

    assert keys == [
        "/coreos.com/network/subnets/10.5.8.0-24",
        "/coreos.com/network/subnets/10.5.9.0-24",
    ]
    assert _decode(seen["key"]) == "/coreos.com/network/subnets/"
    assert _decode(seen["range_end"]) == "/coreos.com/network/subnets0"
    assert seen["keys_only"] is True


@pytest.mark.asyncio
async def test_v3_get_put_delete_round_through_gateway():
    data: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        key = _decode(body["key"])
        if request.url.path == "/v3/kv/put":
            data[key] = _decode(body["value"])
            return httpx.Response(200, json={})
        if request.url.path == "/v3/kv/deleterange":
            return httpx.Response(200, json={"deleted": "1" if data.pop(key, None) is not None else "0"})
        if key in data:
            return httpx.Response(200, json={"kvs": [{"key": body["key"], "value": _b64(data[key])}]})
        return httpx.Response(200, json={})

    store = _v3_store(handler)
    assert await store.get("/flannel/network/_exists") is None
    await store.put("/flannel/network/_exists", "true")
    assert await store.get("/flannel/network/_exists") == "true"
    assert await store.delete("/flannel/network/_exists") is True
    assert await store.delete("/flannel/network/_exists") is False


@pytest.mark.asyncio
async def test_v3_retries_then_raises_unavailable():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    store = _v3_store(handler)
    with pytest.raises(StoreUnavailableError):
        await store.get("/x")
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_v3_retries_server_errors_until_success():
    responses = [httpx.Response(503), httpx.Response(200, json={"kvs": [{"key": _b64("/x"), "value": _b64("1")}]})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    store = _v3_store(handler)
    assert await store.get("/x") == "1"


@pytest.mark.asyncio
async def test_health_reads_health_field():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        return httpx.Response(200, json={"health": "true"})

    assert await _v3_store(handler).health() is True

    def unhealthy(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"health": "false"})

    assert await _v3_store(unhealthy).health() is False


@pytest.mark.asyncio
async def test_health_false_when_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    assert await _v3_store(handler).health() is False


@pytest.mark.asyncio
async def test_v2_list_keys_walks_directories():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["recursive"] == "true"
        return httpx.Response(
            200,
            json={
                "node": {
                    "dir": True,
                    "nodes": [
                        {"key": "/coreos.com/network/subnets/10.5.8.0-24", "value": "{}"},
                        {"dir": True, "nodes": [{"key": "/coreos.com/network/subnets/nested/a"}]},
                    ],
                }
            },
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://etcd")
    store = EtcdV2Store("http://etcd", retry_delay=0, client=client)
    keys = await store.list_keys("/coreos.com/network/subnets")

    assert keys == [
        "/coreos.com/network/subnets/10.5.8.0-24",
        "/coreos.com/network/subnets/nested/a",
    ]


@pytest.mark.asyncio
async def test_v2_missing_key_is_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errorCode": 100})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://etcd")
    store = EtcdV2Store("http://etcd", retry_delay=0, client=client)
    assert await store.get("/nope") is None
    assert await store.list_keys("/nope") == []
    assert await store.delete("/nope") is False


@pytest.mark.asyncio
async def test_v2_non_json_reply_is_store_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy error</html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://etcd")
    store = EtcdV2Store("http://etcd", retry_delay=0, client=client)
    with pytest.raises(StoreError, match="invalid JSON"):
        await store.get("/coreos.com/network/subnets/10.5.3.0-24")
    with pytest.raises(StoreError, match="invalid JSON"):
        await store.list_keys("/coreos.com/network/subnets/")


def test_create_store_selects_api_version():
    cfg = SimpleNamespace(
        etcd_api_version=2,
        etcd_endpoint="http://127.0.0.1:2379",
        etcd_timeout=1.0,
        etcd_retry_count=1,
        etcd_retry_delay=0.0,
    )
    assert isinstance(create_store(cfg), EtcdV2Store)
    cfg.etcd_api_version = 3
    assert isinstance(create_store(cfg), EtcdV3Store)
