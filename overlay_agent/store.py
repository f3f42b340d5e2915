"""Coordination store client (etcd).

``KVStore`` is the narrow interface the rest of the agent depends on. Two
implementations talk to etcd over HTTP with httpx:

- ``EtcdV3Store`` uses the v3 JSON gateway (``/v3/kv/*``), where keys and
  values travel base64-encoded and prefix listing is a range query whose
  ``range_end`` is the prefix with its last byte incremented.
- ``EtcdV2Store`` uses the legacy ``/v2/keys`` API.

Every request is retried on transport errors and 5xx responses, and gives up
with ``StoreUnavailableError`` once the retry budget is spent.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from overlay_agent.errors import StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)


def _b64(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode()
    return base64.b64encode(value).decode()


def _unb64(value: str) -> str:
    return base64.b64decode(value).decode(errors="replace")


def prefix_range_end(prefix: str) -> bytes:
    """Smallest key greater than every key starting with ``prefix``."""
    raw = bytearray(prefix.encode())
    while raw:
        if raw[-1] < 0xFF:
            raw[-1] += 1
            return bytes(raw)
        raw.pop()
    # Empty or all-0xff prefix: range to end of keyspace
    return b"\x00"


class KVStore(ABC):
    """Key-value operations against the coordination store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value at ``key``, or None when absent."""

    @abstractmethod
    async def put(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if something was deleted."""

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]: ...

    @abstractmethod
    async def health(self) -> bool: ...

    async def close(self) -> None:
        return None


class _HttpEtcdStore(KVStore):
    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        retry_count: int = 3,
        retry_delay: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.endpoint, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        last_error = ""
        for attempt in range(1, self.retry_count + 1):
            try:
                response = await self.client.request(method, path, timeout=self.timeout, **kwargs)
                if response.status_code < 500:
                    return response
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
            logger.debug(f"etcd {method} {path} attempt {attempt}/{self.retry_count} failed: {last_error}")
            if attempt < self.retry_count:
                await asyncio.sleep(self.retry_delay)
        raise StoreUnavailableError(f"etcd {method} {path} failed after {self.retry_count} attempts: {last_error}")

    async def health(self) -> bool:
        try:
            response = await self._request("GET", "/health")
        except StoreUnavailableError:
            return False
        if response.status_code != 200:
            return False
        try:
            return str(response.json().get("health", "")).lower() == "true"
        except ValueError:
            return False


class EtcdV3Store(_HttpEtcdStore):
    """etcd v3 JSON gateway client."""

    async def _post(self, path: str, payload: dict) -> dict:
        response = await self._request("POST", path, json=payload)
        if response.status_code != 200:
            raise StoreError(f"etcd POST {path} returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"etcd POST {path} returned invalid JSON") from e

    async def get(self, key: str) -> Optional[str]:
        data = await self._post("/v3/kv/range", {"key": _b64(key)})
        kvs = data.get("kvs") or []
        if not kvs:
            return None
        return _unb64(kvs[0].get("value", ""))

    async def put(self, key: str, value: str) -> None:
        await self._post("/v3/kv/put", {"key": _b64(key), "value": _b64(value)})

    async def delete(self, key: str) -> bool:
        data = await self._post("/v3/kv/deleterange", {"key": _b64(key)})
        return int(data.get("deleted", 0)) > 0

    async def list_keys(self, prefix: str) -> list[str]:
        payload = {
            "key": _b64(prefix),
            "range_end": _b64(prefix_range_end(prefix)),
            "keys_only": True,
        }
        data = await self._post("/v3/kv/range", payload)
        return sorted(_unb64(kv["key"]) for kv in data.get("kvs") or [] if "key" in kv)


class EtcdV2Store(_HttpEtcdStore):
    """etcd v2 keys API client."""

    def _path(self, key: str) -> str:
        return "/v2/keys/" + key.lstrip("/")

    @staticmethod
    def _node(response: httpx.Response, key: str) -> dict:
        try:
            body = response.json()
        except ValueError as e:
            raise StoreError(f"etcd GET {key} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise StoreError(f"etcd GET {key} returned an unexpected body")
        return body.get("node") or {}

    async def get(self, key: str) -> Optional[str]:
        response = await self._request("GET", self._path(key))
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise StoreError(f"etcd GET {key} returned HTTP {response.status_code}")
        return self._node(response, key).get("value")

    async def put(self, key: str, value: str) -> None:
        response = await self._request("PUT", self._path(key), data={"value": value})
        if response.status_code not in (200, 201):
            raise StoreError(f"etcd PUT {key} returned HTTP {response.status_code}")

    async def delete(self, key: str) -> bool:
        response = await self._request("DELETE", self._path(key))
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise StoreError(f"etcd DELETE {key} returned HTTP {response.status_code}")
        return True

    async def list_keys(self, prefix: str) -> list[str]:
        response = await self._request("GET", self._path(prefix), params={"recursive": "true"})
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise StoreError(f"etcd GET {prefix} returned HTTP {response.status_code}")

        keys: list[str] = []

        def _walk(node: dict) -> None:
            if node.get("dir"):
                for child in node.get("nodes", []):
                    _walk(child)
            elif "key" in node:
                keys.append(node["key"])

        _walk(self._node(response, prefix))
        return sorted(keys)


def create_store(settings: Any, client: Optional[httpx.AsyncClient] = None) -> KVStore:
    """Pick the store implementation for the configured etcd API version."""
    cls = EtcdV2Store if int(settings.etcd_api_version) == 2 else EtcdV3Store
    return cls(
        endpoint=settings.etcd_endpoint,
        timeout=settings.etcd_timeout,
        retry_count=settings.etcd_retry_count,
        retry_delay=settings.etcd_retry_delay,
        client=client,
    )
