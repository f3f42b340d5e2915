from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from overlay_agent.containers import NetworkInfo
from overlay_agent.subnets import SubnetRegistrar

SUBNETS = "/coreos.com/network/subnets/"


def _lease(ip: str, mac: str = "aa:bb:cc:dd:ee:ff") -> str:
    return json.dumps({"PublicIP": ip, "BackendType": "vxlan", "BackendData": {"VNI": 1, "VtepMAC": mac}})


def _runtime(networks: list[NetworkInfo]):
    async def list_networks():
        return networks

    return SimpleNamespace(list_networks=list_networks)


def _registrar(store, kernel, networks=()) -> SubnetRegistrar:
    return SubnetRegistrar(
        store,
        kernel,
        _runtime(list(networks)),
        hostname="node-a",
        flannel_prefix="/coreos.com/network",
        config_prefix="/flannel/network",
        overlay_network="10.5.0.0/16",
        device="flannel.1",
    )


@pytest.mark.asyncio
async def test_initialize_schema_is_idempotent(store, kernel) -> None:
    registrar = _registrar(store, kernel)

    assert await registrar.schema_present() is False
    await registrar.initialize_schema()
    await registrar.initialize_schema()

    assert store.data["/flannel/network/_exists"] == "true"
    assert len(store.puts) == 1


@pytest.mark.asyncio
async def test_list_subnets_skips_invalid_records(store, kernel) -> None:
    store.data[SUBNETS + "10.5.8.0-24"] = _lease("203.0.113.5")
    store.data[SUBNETS + "10.5.9.0-24"] = "garbage"
    store.data[SUBNETS + "not-a-subnet"] = _lease("203.0.113.6")

    records = await _registrar(store, kernel).list_subnets()

    assert [r.cidr for r in records] == ["10.5.8.0/24"]


@pytest.mark.asyncio
async def test_cleanup_localhost_entries(store, kernel) -> None:
    store.data[SUBNETS + "10.5.8.0-24"] = _lease("203.0.113.5")
    store.data[SUBNETS + "10.5.9.0-24"] = _lease("127.0.0.1")

    assert await _registrar(store, kernel).cleanup_localhost_entries() == 1
    assert SUBNETS + "10.5.9.0-24" not in store.data
    assert SUBNETS + "10.5.8.0-24" in store.data


@pytest.mark.asyncio
async def test_register_local_subnets_leases_only_overlay_networks(store, kernel, own_ip, own_mac) -> None:
    networks = [
        NetworkInfo(name="overlay-net", subnet="10.5.3.0/24", driver="bridge"),
        NetworkInfo(name="local-net", subnet="172.18.0.0/16", driver="bridge"),
    ]

    written = await _registrar(store, kernel, networks).register_local_subnets()

    assert written == 1
    lease = json.loads(store.data[SUBNETS + "10.5.3.0-24"])
    assert lease["PublicIP"] == own_ip
    assert lease["BackendData"]["VtepMAC"] == own_mac
    assert SUBNETS + "172.18.0.0-16" not in store.data
    assert store.data["/flannel/network/subnets/overlay-net"] == "10.5.3.0/24"
    assert store.data["/flannel/network/subnets/local-net"] == "172.18.0.0/16"


@pytest.mark.asyncio
async def test_detect_conflicts_reports_overlapping_leases(store, kernel, own_ip) -> None:
    networks = [
        NetworkInfo(name="overlay-net", subnet="10.5.3.0/24"),
        NetworkInfo(name="app-net", subnet="10.5.4.0/24"),
        NetworkInfo(name="local-net", subnet="172.18.0.0/16"),
    ]
    # own lease for the same network is expected
    store.data[SUBNETS + "10.5.3.0-24"] = _lease(own_ip)
    # a peer leasing a network this host also uses
    store.data[SUBNETS + "10.5.4.0-24"] = _lease("203.0.113.5")
    # a peer lease partially overlapping a local network
    store.data[SUBNETS + "172.18.5.0-24"] = _lease("203.0.113.6")

    conflicts = await _registrar(store, kernel, networks).detect_conflicts()

    assert [(c.lease_cidr, c.network_name) for c in conflicts] == [
        ("10.5.4.0/24", "app-net"),
        ("172.18.5.0/24", "local-net"),
    ]
    assert store.puts == []


@pytest.mark.asyncio
async def test_detect_conflicts_none(store, kernel) -> None:
    networks = [NetworkInfo(name="overlay-net", subnet="10.5.3.0/24")]
    store.data[SUBNETS + "10.5.8.0-24"] = _lease("203.0.113.5")

    assert await _registrar(store, kernel, networks).detect_conflicts() == []
