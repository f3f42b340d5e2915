"""Local next-hop overrides for indirect routing topologies.

``OVERLAY_AGENT_HOST_GATEWAY_MAP`` maps a peer address (or a subnet of peer
addresses) to the gateway that must be used instead of the peer's published
address, e.g. ``203.0.113.5:203.0.113.1,198.51.100.0/24:192.0.2.1``.

``OVERLAY_AGENT_EXTRA_ROUTES`` adds static routes that are not backed by any
subnet lease, e.g. ``172.20.0.0/16:10.0.0.1:eth1``.
"""
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

from overlay_agent.models import RouteEntry

logger = logging.getLogger(__name__)


class GatewayMap:
    """Host-or-subnet -> gateway override table."""

    def __init__(self, mapping: Optional[dict[str, str]] = None):
        self._hosts: dict[str, str] = {}
        self._subnets: list[tuple[ipaddress.IPv4Network, str]] = []
        for target, gateway in (mapping or {}).items():
            self.add(target, gateway)

    @classmethod
    def parse(cls, text: str) -> "GatewayMap":
        gmap = cls()
        for item in (text or "").split(","):
            item = item.strip()
            if not item:
                continue
            target, sep, gateway = item.partition(":")
            if not sep or not target or not gateway:
                logger.warning(f"Ignoring malformed gateway mapping: {item}")
                continue
            try:
                gmap.add(target.strip(), gateway.strip())
            except ValueError as e:
                logger.warning(f"Ignoring invalid gateway mapping {item}: {e}")
        if gmap:
            logger.info(f"Loaded {len(gmap)} gateway override(s)")
        return gmap

    def add(self, target: str, gateway: str) -> None:
        gw = str(ipaddress.IPv4Address(gateway))
        if "/" in target:
            net = ipaddress.IPv4Network(target, strict=False)
            self._subnets.append((net, gw))
            # Most specific prefix first
            self._subnets.sort(key=lambda item: item[0].prefixlen, reverse=True)
        else:
            self._hosts[str(ipaddress.IPv4Address(target))] = gw

    def resolve(self, address: str) -> Optional[str]:
        """Return the override gateway for ``address``, or None."""
        if address in self._hosts:
            return self._hosts[address]
        try:
            ip = ipaddress.IPv4Address(address)
        except ValueError:
            return None
        for net, gw in self._subnets:
            if ip in net:
                return gw
        return None

    def effective_destination(self, address: str) -> str:
        return self.resolve(address) or address

    def to_dict(self) -> dict[str, str]:
        data = dict(self._hosts)
        data.update({str(net): gw for net, gw in self._subnets})
        return data

    def __len__(self) -> int:
        return len(self._hosts) + len(self._subnets)


@dataclass(frozen=True)
class ExtraRoute:
    cidr: str
    gateway: str
    device: Optional[str] = None

    def to_route(self) -> RouteEntry:
        return RouteEntry(cidr=self.cidr, gateway=self.gateway, device=self.device)

    @classmethod
    def parse_list(cls, text: str) -> list["ExtraRoute"]:
        routes: list[ExtraRoute] = []
        for item in (text or "").split(","):
            item = item.strip()
            if not item:
                continue
            parts = item.split(":")
            if len(parts) not in (2, 3):
                logger.warning(f"Ignoring malformed extra route: {item}")
                continue
            try:
                cidr = str(ipaddress.IPv4Network(parts[0], strict=False))
                gateway = str(ipaddress.IPv4Address(parts[1]))
            except ValueError as e:
                logger.warning(f"Ignoring invalid extra route {item}: {e}")
                continue
            device = parts[2] if len(parts) == 3 and parts[2] else None
            routes.append(cls(cidr=cidr, gateway=gateway, device=device))
        return routes
