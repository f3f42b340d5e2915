from __future__ import annotations

from typing import Optional

import pytest

from overlay_agent.config import settings
from overlay_agent.errors import KernelCommandError, StoreUnavailableError
from overlay_agent.models import FDBEntry, RouteEntry
from overlay_agent.network.kernel import KernelNetwork, LinkInfo, LinkStats
from overlay_agent.store import KVStore

OWN_MAC = "0a:0a:0a:0a:0a:0a"
OWN_IP = "192.0.2.10"
DEVICE = "flannel.1"


@pytest.fixture(autouse=True)
def _isolate_state_dir(monkeypatch, tmp_path):
    """Keep snapshots, recovery history and health status out of /var/run."""
    monkeypatch.setattr(settings, "state_dir", str(tmp_path / "state"))
    yield


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore(KVStore):
    """In-memory KVStore. Set ``available = False`` to simulate an outage."""

    def __init__(self, data: Optional[dict[str, str]] = None):
        self.data: dict[str, str] = dict(data or {})
        self.available = True
        self.healthy = True
        self.puts: list[tuple[str, str]] = []
        self.deletes: list[str] = []

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("etcd unreachable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._check()
        self.data[key] = value
        self.puts.append((key, value))

    async def delete(self, key: str) -> bool:
        self._check()
        self.deletes.append(key)
        return self.data.pop(key, None) is not None

    async def list_keys(self, prefix: str) -> list[str]:
        self._check()
        return sorted(k for k in self.data if k.startswith(prefix))

    async def health(self) -> bool:
        return self.available and self.healthy


class FakeKernel(KernelNetwork):
    """In-memory kernel tables for one overlay device."""

    def __init__(self, mac: str = OWN_MAC, addresses: Optional[list[str]] = None):
        self.fdb: dict[str, FDBEntry] = {}
        self.routes: dict[str, RouteEntry] = {}
        self.link = LinkInfo(name=DEVICE, exists=True, admin_up=True, operstate="UNKNOWN", mtu=1370, mac=mac)
        self.stats = LinkStats()
        self.addresses = list(addresses if addresses is not None else [OWN_IP])
        self.calls: list[tuple] = []
        self.fail_macs: set[str] = set()
        self.fail_link = False

    def _fail(self, cmd: list[str]) -> None:
        raise KernelCommandError(cmd, 2, "RTNETLINK answers: Operation not permitted")

    async def list_fdb(self, dev: str) -> list[FDBEntry]:
        return list(self.fdb.values())

    async def add_fdb(self, mac: str, dst: str, dev: str) -> None:
        self.calls.append(("add_fdb", mac, dst))
        if mac in self.fail_macs:
            self._fail(["bridge", "fdb", "add", mac])
        self.fdb[mac] = FDBEntry(mac=mac, dst=dst)

    async def del_fdb(self, mac: str, dev: str, dst: Optional[str] = None) -> None:
        self.calls.append(("del_fdb", mac, dst))
        self.fdb.pop(mac, None)

    async def list_routes(self) -> list[RouteEntry]:
        return list(self.routes.values())

    async def add_route(self, route: RouteEntry) -> None:
        self.calls.append(("add_route", route.cidr, route.gateway))
        self.routes[route.cidr] = route

    async def replace_route(self, route: RouteEntry) -> None:
        self.calls.append(("replace_route", route.cidr, route.gateway))
        self.routes[route.cidr] = route

    async def del_route(self, route: RouteEntry) -> None:
        self.calls.append(("del_route", route.cidr, route.gateway))
        self.routes.pop(route.cidr, None)

    async def link_info(self, dev: str) -> LinkInfo:
        return self.link

    async def link_stats(self, dev: str) -> Optional[LinkStats]:
        return self.stats if self.link.exists else None

    async def set_link(self, dev: str, up: bool) -> None:
        self.calls.append(("set_link", up))
        if self.fail_link:
            self._fail(["ip", "link", "set", dev])
        self.link.admin_up = up

    async def set_mtu(self, dev: str, mtu: int) -> None:
        self.calls.append(("set_mtu", mtu))
        self.link.mtu = mtu

    async def read_mac(self, dev: str) -> Optional[str]:
        return self.link.mac or None

    async def primary_address(self) -> Optional[str]:
        return self.addresses[0] if self.addresses else None

    async def list_addresses(self) -> list[str]:
        return list(self.addresses)

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("add_fdb", "del_fdb", "add_route", "replace_route", "del_route")]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def kernel() -> FakeKernel:
    return FakeKernel()


@pytest.fixture
def own_ip() -> str:
    return OWN_IP


@pytest.fixture
def own_mac() -> str:
    return OWN_MAC


@pytest.fixture
def kernel_factory():
    """Builds extra kernels, e.g. a fresh one after a simulated reboot."""
    return FakeKernel
