"""Subnet lease publication and discovery.

Local Docker networks whose subnet falls inside the overlay network are
published as subnet leases under ``{flannel_prefix}/subnets/<cidr-key>`` in
the control plane's own lease format. Every local network is also recorded
as ``{config_prefix}/subnets/<network-name> = <cidr>`` for operators.
Leases from other hosts that overlap a local network are reported as
conflicts.
"""
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

from overlay_agent.containers import ContainerRuntime, NetworkInfo
from overlay_agent.errors import RecordError, StoreError
from overlay_agent.network.kernel import KernelNetwork
from overlay_agent.schemas import BackendData, SubnetRecord, is_valid_mac, subnet_to_key
from overlay_agent.store import KVStore

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


@dataclass
class SubnetConflict:
    lease_cidr: str
    lease_owner: str
    network_name: str
    network_cidr: str

    def to_dict(self) -> dict:
        return {
            "lease_cidr": self.lease_cidr,
            "lease_owner": self.lease_owner,
            "network_name": self.network_name,
            "network_cidr": self.network_cidr,
        }


class SubnetRegistrar:
    """Reads and writes subnet leases in the coordination store."""

    def __init__(
        self,
        store: KVStore,
        kernel: KernelNetwork,
        runtime: ContainerRuntime,
        hostname: str,
        flannel_prefix: str,
        config_prefix: str,
        overlay_network: str,
        device: str,
        public_ip: str = "",
        vni: int = 1,
    ):
        self.store = store
        self.kernel = kernel
        self.runtime = runtime
        self.hostname = hostname
        self.subnet_prefix = f"{flannel_prefix.rstrip('/')}/subnets/"
        self.config_prefix = config_prefix.rstrip("/")
        self.overlay_network = ipaddress.IPv4Network(overlay_network, strict=False)
        self.device = device
        self.public_ip = public_ip
        self.vni = vni

    @property
    def schema_marker(self) -> str:
        return f"{self.config_prefix}/_exists"

    async def initialize_schema(self) -> None:
        """Create the schema root marker if it does not exist yet."""
        if await self.store.get(self.schema_marker) is None:
            await self.store.put(self.schema_marker, "true")
            logger.info(f"Initialized store schema at {self.config_prefix}")

    async def schema_present(self) -> bool:
        return await self.store.get(self.schema_marker) is not None

    async def list_subnets(self) -> list[SubnetRecord]:
        """Return every valid subnet lease.

        Malformed keys and values are logged and skipped.

        Raises:
            StoreUnavailableError: when the store cannot be reached.
        """
        records = []
        for key in await self.store.list_keys(self.subnet_prefix):
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                records.append(SubnetRecord.from_key(key, raw))
            except RecordError as e:
                logger.warning(f"Skipping invalid subnet record: {e}")
        return records

    async def cleanup_localhost_entries(self) -> int:
        """Delete leases advertising the loopback address."""
        removed = 0
        for record in await self.list_subnets():
            if record.public_ip != LOCALHOST:
                continue
            key = self.subnet_prefix + subnet_to_key(record.cidr)
            try:
                if await self.store.delete(key):
                    removed += 1
                    logger.info(f"Removed localhost subnet lease {record.cidr}")
            except StoreError as e:
                logger.warning(f"Failed to remove localhost lease {record.cidr}: {e}")
        return removed

    async def discover_local_networks(self) -> list[NetworkInfo]:
        networks = await self.runtime.list_networks()
        logger.info(f"Discovered {len(networks)} Docker networks on {self.hostname}")
        return networks

    def in_overlay(self, cidr: str) -> bool:
        try:
            return ipaddress.IPv4Network(cidr, strict=False).subnet_of(self.overlay_network)
        except (ValueError, TypeError):
            return False

    async def _lease_for(self, cidr: str) -> Optional[SubnetRecord]:
        mac = await self.kernel.read_mac(self.device)
        address = self.public_ip or await self.kernel.primary_address()
        if not address:
            logger.warning(f"No public address available for lease {cidr}")
            return None
        return SubnetRecord(
            PublicIP=address,
            BackendData=BackendData(VNI=self.vni, VtepMAC=mac if is_valid_mac(mac) else ""),
            cidr=cidr,
        )

    async def register_local_subnets(self) -> int:
        """Publish leases for local overlay networks. Returns leases written."""
        written = 0
        for network in await self.discover_local_networks():
            cidr = str(ipaddress.IPv4Network(network.subnet, strict=False))
            if self.in_overlay(cidr):
                record = await self._lease_for(cidr)
                if record is not None:
                    try:
                        await self.store.put(self.subnet_prefix + subnet_to_key(cidr), record.to_json())
                        written += 1
                        logger.info(f"Registered overlay subnet {cidr} ({network.name})")
                    except StoreError as e:
                        logger.error(f"Failed to register overlay subnet {cidr}: {e}")
            else:
                logger.debug(f"Network {network.name} ({cidr}) is outside the overlay, not leased")
            try:
                await self.store.put(f"{self.config_prefix}/subnets/{network.name}", cidr)
            except StoreError as e:
                logger.error(f"Failed to record network {network.name}: {e}")
        return written

    async def detect_conflicts(self) -> list[SubnetConflict]:
        """Find leases that overlap a local Docker network.

        A lease matching a local network exactly is expected when this host
        owns it. Anything else that overlaps is reported and logged, never
        changed.
        """
        own = set(await self.kernel.list_addresses())
        if self.public_ip:
            own.add(self.public_ip)
        local = []
        for network in await self.discover_local_networks():
            try:
                local.append((network, ipaddress.IPv4Network(network.subnet, strict=False)))
            except (ValueError, TypeError):
                continue

        conflicts = []
        for record in await self.list_subnets():
            leased = ipaddress.IPv4Network(record.cidr)
            for network, cidr in local:
                if not leased.overlaps(cidr):
                    continue
                if leased == cidr and record.public_ip in own:
                    continue
                conflict = SubnetConflict(record.cidr, record.public_ip, network.name, str(cidr))
                logger.warning(
                    f"Subnet conflict: lease {conflict.lease_cidr} ({conflict.lease_owner}) overlaps "
                    f"Docker network {conflict.network_name} ({conflict.network_cidr})"
                )
                conflicts.append(conflict)
        if not conflicts:
            logger.info("No subnet conflicts detected")
        return conflicts
