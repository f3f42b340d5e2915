"""Kernel network table access for the overlay device.

``KernelNetwork`` is the capability interface the reconciler, health checkers
and recovery actions use to read and mutate link state, the VXLAN forwarding
database and the routing table. ``IpRoute2Kernel`` implements it on top of
the iproute2 ``ip`` and ``bridge`` tools using their JSON output (``-j``).

Queries never raise for a missing device, they return empty results so that
health checkers can report the absence. Mutations raise
``KernelCommandError`` so callers can count failures per entry.
"""
from __future__ import annotations

import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from overlay_agent.errors import KernelCommandError
from overlay_agent.models import FDBEntry, RouteEntry
from overlay_agent.network.cmd import run_cmd

logger = logging.getLogger(__name__)

FLOOD_MAC = "00:00:00:00:00:00"


@dataclass
class LinkInfo:
    name: str
    exists: bool = False
    admin_up: bool = False
    operstate: str = "ABSENT"
    mtu: int = 0
    mac: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "exists": self.exists,
            "admin_up": self.admin_up,
            "operstate": self.operstate,
            "mtu": self.mtu,
            "mac": self.mac,
        }


@dataclass
class LinkStats:
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0


class KernelNetwork(ABC):
    """Read and mutate link, FDB and route state."""

    @abstractmethod
    async def list_fdb(self, dev: str) -> list[FDBEntry]: ...

    @abstractmethod
    async def add_fdb(self, mac: str, dst: str, dev: str) -> None: ...

    @abstractmethod
    async def del_fdb(self, mac: str, dev: str, dst: Optional[str] = None) -> None: ...

    @abstractmethod
    async def list_routes(self) -> list[RouteEntry]: ...

    @abstractmethod
    async def add_route(self, route: RouteEntry) -> None: ...

    @abstractmethod
    async def replace_route(self, route: RouteEntry) -> None: ...

    @abstractmethod
    async def del_route(self, route: RouteEntry) -> None: ...

    @abstractmethod
    async def link_info(self, dev: str) -> LinkInfo: ...

    @abstractmethod
    async def link_stats(self, dev: str) -> Optional[LinkStats]: ...

    @abstractmethod
    async def set_link(self, dev: str, up: bool) -> None: ...

    @abstractmethod
    async def set_mtu(self, dev: str, mtu: int) -> None: ...

    @abstractmethod
    async def read_mac(self, dev: str) -> Optional[str]: ...

    @abstractmethod
    async def primary_address(self) -> Optional[str]: ...

    @abstractmethod
    async def list_addresses(self) -> list[str]: ...


def _route_args(route: RouteEntry) -> list[str]:
    args = [route.cidr]
    if route.gateway:
        args += ["via", route.gateway]
    if route.device:
        args += ["dev", route.device]
    if route.onlink:
        args.append("onlink")
    return args


def _normalize_dst(dst: str) -> str:
    if dst == "default":
        return "0.0.0.0/0"
    if "/" not in dst:
        return f"{dst}/32"
    return str(ipaddress.ip_network(dst, strict=False))


class IpRoute2Kernel(KernelNetwork):
    """KernelNetwork backed by iproute2."""

    def __init__(self, timeout: float = 10.0, sysfs_root: str = "/sys/class/net"):
        self._timeout = timeout
        self._sysfs = Path(sysfs_root)

    async def _run_cmd(self, cmd: list[str]) -> tuple[int, str, str]:
        return await run_cmd(cmd, timeout=self._timeout)

    async def _mutate(self, cmd: list[str]) -> None:
        code, _, stderr = await self._run_cmd(cmd)
        if code != 0:
            raise KernelCommandError(cmd, code, stderr)

    async def _query_json(self, cmd: list[str]) -> list[dict]:
        code, stdout, stderr = await self._run_cmd(cmd)
        if code != 0:
            logger.debug(f"{' '.join(cmd)} returned {code}: {stderr.strip()}")
            return []
        try:
            data = json.loads(stdout) if stdout.strip() else []
        except json.JSONDecodeError:
            logger.warning(f"Unparseable JSON from {' '.join(cmd)}")
            return []
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # FDB
    # ------------------------------------------------------------------

    async def list_fdb(self, dev: str) -> list[FDBEntry]:
        entries = []
        for item in await self._query_json(["bridge", "-j", "fdb", "show", "dev", dev]):
            mac = str(item.get("mac", "")).lower()
            if not mac:
                continue
            dst = item.get("dst")
            entries.append(FDBEntry(mac=mac, dst=dst, local=dst is None or mac == FLOOD_MAC))
        return entries

    async def add_fdb(self, mac: str, dst: str, dev: str) -> None:
        await self._mutate(["bridge", "fdb", "add", mac, "dev", dev, "dst", dst])

    async def del_fdb(self, mac: str, dev: str, dst: Optional[str] = None) -> None:
        cmd = ["bridge", "fdb", "del", mac, "dev", dev]
        if dst:
            cmd += ["dst", dst]
        await self._mutate(cmd)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def list_routes(self) -> list[RouteEntry]:
        routes = []
        for item in await self._query_json(["ip", "-j", "-4", "route", "show"]):
            dst = item.get("dst")
            if not dst:
                continue
            try:
                cidr = _normalize_dst(dst)
            except ValueError:
                continue
            routes.append(
                RouteEntry(
                    cidr=cidr,
                    gateway=item.get("gateway"),
                    device=item.get("dev"),
                    onlink="onlink" in item.get("flags", []),
                )
            )
        return routes

    async def add_route(self, route: RouteEntry) -> None:
        await self._mutate(["ip", "route", "add", *_route_args(route)])

    async def replace_route(self, route: RouteEntry) -> None:
        await self._mutate(["ip", "route", "replace", *_route_args(route)])

    async def del_route(self, route: RouteEntry) -> None:
        await self._mutate(["ip", "route", "del", *_route_args(route)])

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    async def link_info(self, dev: str) -> LinkInfo:
        items = await self._query_json(["ip", "-j", "link", "show", "dev", dev])
        if not items:
            return LinkInfo(name=dev)
        item = items[0]
        return LinkInfo(
            name=dev,
            exists=True,
            admin_up="UP" in item.get("flags", []),
            operstate=str(item.get("operstate", "UNKNOWN")),
            mtu=int(item.get("mtu", 0)),
            mac=str(item.get("address", "")).lower(),
        )

    async def link_stats(self, dev: str) -> Optional[LinkStats]:
        items = await self._query_json(["ip", "-j", "-s", "link", "show", "dev", dev])
        if not items:
            return None
        stats = items[0].get("stats64") or items[0].get("stats") or {}
        rx = stats.get("rx", {})
        tx = stats.get("tx", {})
        return LinkStats(
            rx_bytes=int(rx.get("bytes", 0)),
            tx_bytes=int(tx.get("bytes", 0)),
            rx_packets=int(rx.get("packets", 0)),
            tx_packets=int(tx.get("packets", 0)),
        )

    async def set_link(self, dev: str, up: bool) -> None:
        await self._mutate(["ip", "link", "set", dev, "up" if up else "down"])

    async def set_mtu(self, dev: str, mtu: int) -> None:
        await self._mutate(["ip", "link", "set", dev, "mtu", str(mtu)])

    async def read_mac(self, dev: str) -> Optional[str]:
        path = self._sysfs / dev / "address"
        try:
            mac = path.read_text().strip().lower()
        except OSError:
            info = await self.link_info(dev)
            mac = info.mac
        return mac or None

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    async def primary_address(self) -> Optional[str]:
        """Source address of the default route, else the first global IPv4."""
        code, stdout, _ = await self._run_cmd(["ip", "route", "get", "1.1.1.1"])
        if code == 0:
            # Output: "1.1.1.1 via X.X.X.X dev ethX src Y.Y.Y.Y uid 0"
            parts = stdout.split()
            if "src" in parts:
                idx = parts.index("src")
                if idx + 1 < len(parts):
                    return parts[idx + 1]
        addresses = await self.list_addresses()
        return addresses[0] if addresses else None

    async def list_addresses(self) -> list[str]:
        result = []
        for item in await self._query_json(["ip", "-j", "-4", "addr", "show", "scope", "global"]):
            for addr in item.get("addr_info", []):
                if addr.get("family") == "inet" and addr.get("local"):
                    result.append(addr["local"])
        return result
