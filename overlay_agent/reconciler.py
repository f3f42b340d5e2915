"""Network state reconciler.

Converges the overlay device's forwarding database and the host routing
table onto the desired state published in the coordination store:

1. Read every subnet lease and every host presence record.
2. Resolve each remote host's effective destination (gateway override if
   configured, else its published address).
3. Build the desired FDB (endpoint MAC -> destination) and route
   (CIDR -> gateway) sets. The local host's own leases are always excluded.
4. Diff against the kernel and apply the minimal add/delete operations.

A FDB entry pointing at the wrong destination is deleted and re-added (the
kernel has no atomic FDB update). Entries whose MAC is not desired are
removed whatever their origin. Routes are only removed when they fall inside
the overlay network or were applied by a previous pass, so unrelated host
routes are never touched.

Each routes pass also makes sure the forward-accept rules for the overlay
network are installed.

Individual kernel failures are counted and logged. They never abort the
pass, and the next interval retries from scratch.

After every pass the applied state is written to a local snapshot, which is
replayed on startup before the store has been read successfully.
"""
from __future__ import annotations

import ipaddress
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from overlay_agent import metrics
from overlay_agent.errors import KernelCommandError, StoreError
from overlay_agent.hosts import HostLivenessRegistry
from overlay_agent.models import FDBEntry, RouteEntry
from overlay_agent.network.firewall import Firewall, NoopFirewall
from overlay_agent.network.gateways import ExtraRoute, GatewayMap
from overlay_agent.network.kernel import KernelNetwork
from overlay_agent.persistence import load_json, save_json
from overlay_agent.schemas import (
    HostStatusRecord,
    SubnetRecord,
    is_valid_ipv4,
    is_valid_mac,
    synthetic_mac_from_ip,
)
from overlay_agent.subnets import LOCALHOST, SubnetRegistrar

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "network_snapshot.json"


@dataclass
class TableCounts:
    added: int = 0
    updated: int = 0
    removed: int = 0
    errors: int = 0

    @property
    def mutations(self) -> int:
        return self.added + self.updated + self.removed

    def to_dict(self) -> dict:
        return {
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "errors": self.errors,
        }


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    fdb: TableCounts = field(default_factory=TableCounts)
    routes: TableCounts = field(default_factory=TableCounts)
    firewall: TableCounts = field(default_factory=TableCounts)
    skipped: bool = False
    source: str = "store"  # store, cache or snapshot
    error: Optional[str] = None

    @property
    def total_mutations(self) -> int:
        return self.fdb.mutations + self.routes.mutations

    @property
    def ok(self) -> bool:
        return self.error is None and not any(t.errors for t in (self.fdb, self.routes, self.firewall))

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "source": self.source,
            "error": self.error,
            "fdb": self.fdb.to_dict(),
            "routes": self.routes.to_dict(),
            "firewall": self.firewall.to_dict(),
        }


@dataclass
class DesiredState:
    fdb: dict[str, str] = field(default_factory=dict)  # mac -> destination
    routes: dict[str, RouteEntry] = field(default_factory=dict)  # cidr -> route
    local_cidrs: set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "fdb": [{"mac": mac, "dst": dst} for mac, dst in sorted(self.fdb.items())],
            "routes": [self.routes[cidr].to_dict() for cidr in sorted(self.routes)],
            "local_cidrs": sorted(self.local_cidrs),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DesiredState":
        state = cls()
        for item in data.get("fdb", []):
            if is_valid_mac(item.get("mac")) and item.get("dst"):
                state.fdb[item["mac"].lower()] = item["dst"]
        for item in data.get("routes", []):
            if item.get("cidr"):
                state.routes[item["cidr"]] = RouteEntry(
                    cidr=item["cidr"],
                    gateway=item.get("gateway"),
                    device=item.get("device"),
                    onlink=bool(item.get("onlink", False)),
                )
        state.local_cidrs = set(data.get("local_cidrs", []))
        return state


def compute_desired_state(
    subnets: Iterable[SubnetRecord],
    hosts: dict[str, HostStatusRecord],
    gateways: GatewayMap,
    extra_routes: Iterable[ExtraRoute] = (),
    own_hostname: str = "",
    own_addresses: Iterable[str] = (),
    own_mac: Optional[str] = None,
    active_cutoff: float = 0,
) -> DesiredState:
    """Derive the desired FDB and route sets from store records.

    While any peer has a live presence record, those records are the FDB
    peer set: each live host contributes its own MAC, or the MAC from one of
    its leases when its record carries none. Lease owners without a live
    presence record get no FDB entry. With no live presence records at all,
    lease backend data is used directly. Leases owned by a host whose
    presence record has gone stale contribute nothing in either mode, and
    a peer with no usable MAC anywhere falls back to a synthetic MAC derived
    from its address.
    """
    own = set(own_addresses) | {LOCALHOST}
    subnets = list(subnets)
    state = DesiredState()

    live_hosts: dict[str, HostStatusRecord] = {}
    stale_ips: set[str] = set()
    stale_macs: set[str] = set()
    for hostname, record in hosts.items():
        if hostname == own_hostname or record.public_ip in own:
            continue
        if not is_valid_ipv4(record.public_ip):
            logger.warning(f"Ignoring host status for {hostname}: invalid address {record.public_ip!r}")
            continue
        if record.timestamp >= active_cutoff:
            live_hosts[hostname] = record
        else:
            stale_ips.add(record.public_ip)
            stale_macs.add(record.vtep_mac)
    stale_ips -= {r.public_ip for r in live_hosts.values()}

    def _is_local(record: SubnetRecord) -> bool:
        return record.public_ip in own or (bool(own_hostname) and record.hostname == own_hostname)

    remote_leases = [r for r in subnets if not _is_local(r) and r.public_ip not in stale_ips]

    # Endpoint MAC -> published address
    endpoints: dict[str, str] = {}
    unresolved: list[str] = []
    if live_hosts:
        lease_macs = {
            r.public_ip: r.vtep_mac for r in remote_leases if is_valid_mac(r.vtep_mac)
        }
        for record in live_hosts.values():
            mac = record.vtep_mac if is_valid_mac(record.vtep_mac) else lease_macs.get(record.public_ip)
            if mac:
                endpoints[mac] = record.public_ip
            else:
                unresolved.append(record.public_ip)
    else:
        for record in remote_leases:
            if not is_valid_mac(record.vtep_mac):
                unresolved.append(record.public_ip)
            elif record.vtep_mac not in stale_macs:
                endpoints[record.vtep_mac] = record.public_ip

    covered_ips = set(endpoints.values())
    for address in unresolved:
        if address in covered_ips:
            continue
        mac = synthetic_mac_from_ip(address)
        logger.warning(f"No endpoint MAC published for {address}; falling back to synthetic MAC {mac}")
        endpoints[mac] = address
        covered_ips.add(address)

    if own_mac:
        endpoints.pop(own_mac.lower(), None)
    state.fdb = {mac: gateways.effective_destination(ip) for mac, ip in endpoints.items()}

    for record in subnets:
        if _is_local(record):
            state.local_cidrs.add(record.cidr)
            continue
        if record.public_ip in stale_ips:
            continue
        gateway = gateways.effective_destination(record.public_ip)
        state.routes[record.cidr] = RouteEntry(cidr=record.cidr, gateway=gateway)
    for extra in extra_routes:
        state.routes[extra.cidr] = extra.to_route()
    return state


def _route_matches(actual: RouteEntry, desired: RouteEntry) -> bool:
    if actual.gateway != desired.gateway:
        return False
    return desired.device is None or actual.device == desired.device


class NetworkReconciler:
    """Diff-and-apply loop for the overlay FDB and routes."""

    def __init__(
        self,
        kernel: KernelNetwork,
        hosts: HostLivenessRegistry,
        subnets: SubnetRegistrar,
        gateways: GatewayMap,
        device: str,
        hostname: str,
        overlay_network: str,
        state_dir: Path,
        extra_routes: Optional[list[ExtraRoute]] = None,
        firewall: Optional[Firewall] = None,
        public_ip: str = "",
        fdb_interval: int = 120,
        routes_interval: int = 120,
        active_max_age: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.kernel = kernel
        self.hosts = hosts
        self.subnets = subnets
        self.gateways = gateways
        self.device = device
        self.hostname = hostname
        self.overlay_network = ipaddress.IPv4Network(overlay_network, strict=False)
        self.extra_routes = extra_routes or []
        self.firewall = firewall or NoopFirewall()
        self.public_ip = public_ip
        self.fdb_interval = fdb_interval
        self.routes_interval = routes_interval
        self.active_max_age = active_max_age
        self._clock = clock
        self._snapshot_path = Path(state_dir) / SNAPSHOT_FILE
        self._last_fdb_run = 0.0
        self._last_routes_run = 0.0
        self._cached_state: Optional[DesiredState] = None
        self._cached_at = 0.0
        self.last_result: Optional[ReconcileResult] = None
        self.last_subnets: list[SubnetRecord] = []
        self.last_hosts: dict[str, HostStatusRecord] = {}
        self._applied_routes: set[str] = set(
            route.get("cidr") for route in (load_json(self._snapshot_path, {}) or {}).get("routes", [])
            if route.get("cidr")
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def own_addresses(self) -> set[str]:
        addresses = set(await self.kernel.list_addresses())
        if self.public_ip:
            addresses.add(self.public_ip)
        return addresses

    async def read_desired_state(self) -> DesiredState:
        """Read store records and compute the desired state.

        Raises:
            StoreError: when the store cannot be read.
        """
        subnets = await self.subnets.list_subnets()
        hosts = await self.hosts.all_records()
        self.last_subnets = subnets
        self.last_hosts = hosts
        state = compute_desired_state(
            subnets,
            hosts,
            self.gateways,
            self.extra_routes,
            own_hostname=self.hostname,
            own_addresses=await self.own_addresses(),
            own_mac=await self.kernel.read_mac(self.device),
            active_cutoff=self._clock() - self.active_max_age,
        )
        self._cached_state = state
        self._cached_at = self._clock()
        return state

    async def current_desired_state(self, max_age: float = 30) -> DesiredState:
        """Desired state read within ``max_age`` seconds, else a fresh read."""
        if self._cached_state is not None and self._clock() - self._cached_at <= max_age:
            return self._cached_state
        return await self.read_desired_state()

    async def remote_subnets(self) -> list[str]:
        """Overlay subnets leased by other live hosts."""
        desired = await self.current_desired_state()
        leased = {record.cidr for record in self.last_subnets}
        return sorted(cidr for cidr in desired.routes if cidr in leased)

    async def reconcile(self, force: bool = False) -> ReconcileResult:
        """Run one reconciliation pass.

        Calls made sooner than the configured interval after the previous
        pass are no-ops that return a skipped, successful result.
        """
        now = self._clock()
        do_fdb = force or now - self._last_fdb_run >= self.fdb_interval
        do_routes = force or now - self._last_routes_run >= self.routes_interval
        if not do_fdb and not do_routes:
            logger.debug("Reconcile skipped: within update interval")
            return ReconcileResult(skipped=True)

        result = ReconcileResult()
        try:
            desired = await self.read_desired_state()
        except StoreError as e:
            desired = self._fallback_state()
            if desired is None:
                logger.error(f"Coordination store unavailable and no cached state, skipping reconcile: {e}")
                result.skipped = True
                result.error = str(e)
                self.last_result = result
                return result
            result.source = "cache" if desired is self._cached_state else "snapshot"
            result.error = str(e)
            logger.warning(f"Coordination store unavailable, reconciling from {result.source}: {e}")

        if do_fdb:
            with metrics.reconcile_duration.labels(table="fdb").time():
                result.fdb = await self.apply_fdb(desired.fdb)
            self._last_fdb_run = now
        if do_routes:
            with metrics.reconcile_duration.labels(table="routes").time():
                result.routes = await self.apply_routes(desired.routes, desired.local_cidrs)
            self._last_routes_run = now
            result.firewall = await self.apply_firewall()

        self._save_snapshot(desired)
        self.last_result = result
        logger.info(
            f"Reconcile complete ({result.source}): "
            f"fdb {result.fdb.added} added, {result.fdb.updated} updated, {result.fdb.removed} removed, "
            f"{result.fdb.errors} errors; routes {result.routes.added} added, {result.routes.updated} updated, "
            f"{result.routes.removed} removed, {result.routes.errors} errors; "
            f"firewall {result.firewall.added} rules added"
        )
        return result

    async def restore_from_snapshot(self) -> Optional[ReconcileResult]:
        """Re-apply the last snapshot without removing anything."""
        state = self._load_snapshot()
        if state is None:
            return None
        logger.info(f"Restoring {len(state.fdb)} FDB entries and {len(state.routes)} routes from snapshot")
        result = ReconcileResult(source="snapshot")
        result.fdb = await self.apply_fdb(state.fdb, prune=False)
        result.routes = await self.apply_routes(state.routes, state.local_cidrs, prune=False)
        return result

    # ------------------------------------------------------------------
    # FDB
    # ------------------------------------------------------------------

    async def apply_fdb(self, desired: dict[str, str], prune: bool = True) -> TableCounts:
        counts = TableCounts()
        actual: dict[str, list[FDBEntry]] = defaultdict(list)
        for entry in await self.kernel.list_fdb(self.device):
            if not entry.local:
                actual[entry.mac].append(entry)

        for mac, dst in sorted(desired.items()):
            entries = actual.get(mac, [])
            correct = [e for e in entries if e.dst == dst]
            wrong = [e for e in entries if e.dst != dst]
            if correct and not wrong:
                continue
            try:
                for entry in wrong:
                    await self.kernel.del_fdb(mac, self.device, entry.dst)
                if not correct:
                    await self.kernel.add_fdb(mac, dst, self.device)
            except KernelCommandError as e:
                counts.errors += 1
                logger.error(f"FDB update for {mac} -> {dst} failed: {e}")
                continue
            if entries:
                counts.updated += 1
                logger.info(f"Updated FDB entry {mac} -> {dst} (was {', '.join(str(e.dst) for e in wrong)})")
            else:
                counts.added += 1
                logger.info(f"Added FDB entry {mac} -> {dst}")

        if prune:
            for mac, entries in sorted(actual.items()):
                if mac in desired:
                    continue
                for entry in entries:
                    try:
                        await self.kernel.del_fdb(mac, self.device, entry.dst)
                    except KernelCommandError as e:
                        counts.errors += 1
                        logger.error(f"Failed to remove stale FDB entry {mac} -> {entry.dst}: {e}")
                        continue
                    counts.removed += 1
                    logger.info(f"Removed stale FDB entry {mac} -> {entry.dst}")

        self._record_metrics("fdb", counts)
        return counts

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _is_managed_route(self, route: RouteEntry, local_cidrs: set[str]) -> bool:
        """Whether a kernel route not in the desired set may be removed."""
        if route.cidr in local_cidrs:
            return False
        network = ipaddress.IPv4Network(route.cidr)
        if network == self.overlay_network:
            return False
        if route.cidr in self._applied_routes:
            return True
        if not network.subnet_of(self.overlay_network):
            return False
        # Kernel link routes for local bridges carry no gateway
        return route.gateway is not None

    async def apply_routes(
        self,
        desired: dict[str, RouteEntry],
        local_cidrs: Optional[set[str]] = None,
        prune: bool = True,
    ) -> TableCounts:
        counts = TableCounts()
        local_cidrs = local_cidrs or set()
        actual: dict[str, list[RouteEntry]] = defaultdict(list)
        for route in await self.kernel.list_routes():
            actual[route.cidr].append(route)

        for cidr, route in sorted(desired.items()):
            existing = actual.get(cidr, [])
            if any(_route_matches(r, route) for r in existing):
                continue
            try:
                if existing:
                    await self.kernel.replace_route(route)
                else:
                    await self.kernel.add_route(route)
            except KernelCommandError as e:
                counts.errors += 1
                logger.error(f"Route update for {cidr} via {route.gateway} failed: {e}")
                continue
            if existing:
                counts.updated += 1
                logger.info(f"Replaced route {cidr} via {route.gateway} (was via {existing[0].gateway})")
            else:
                counts.added += 1
                logger.info(f"Added route {cidr} via {route.gateway}")

        if prune:
            for cidr, routes in sorted(actual.items()):
                if cidr in desired:
                    continue
                for route in routes:
                    if not self._is_managed_route(route, local_cidrs):
                        continue
                    try:
                        await self.kernel.del_route(route)
                    except KernelCommandError as e:
                        counts.errors += 1
                        logger.error(f"Failed to remove stale route {cidr}: {e}")
                        continue
                    counts.removed += 1
                    logger.info(f"Removed stale route {cidr} via {route.gateway}")

        self._applied_routes = set(desired)
        self._record_metrics("routes", counts)
        return counts

    # ------------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------------

    async def apply_firewall(self) -> TableCounts:
        counts = TableCounts()
        try:
            counts.added = await self.firewall.ensure_forward_accept(str(self.overlay_network))
        except KernelCommandError as e:
            counts.errors += 1
            logger.error(f"Failed to ensure forward rules for {self.overlay_network}: {e}")
        self._record_metrics("firewall", counts)
        return counts

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record_metrics(self, table: str, counts: TableCounts) -> None:
        for op in ("added", "updated", "removed"):
            value = getattr(counts, op)
            if value:
                metrics.reconcile_operations.labels(table=table, op=op).inc(value)
        if counts.errors:
            metrics.reconcile_errors.labels(table=table).inc(counts.errors)

    def _fallback_state(self) -> Optional[DesiredState]:
        if self._cached_state is not None:
            return self._cached_state
        return self._load_snapshot()

    def _load_snapshot(self) -> Optional[DesiredState]:
        data = load_json(self._snapshot_path)
        if not isinstance(data, dict):
            return None
        return DesiredState.from_dict(data)

    def _save_snapshot(self, state: DesiredState) -> None:
        data = state.to_dict()
        data["timestamp"] = int(self._clock())
        save_json(self._snapshot_path, data)
