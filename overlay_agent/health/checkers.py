"""Health checkers, one per monitored component.

Each checker observes one subsystem, decides a status and writes it into the
``HealthRegistry``. ``HealthMonitor`` runs the enabled checkers in a fixed
order and returns the aggregate system status.

Component names:

    network.etcd          coordination store reachability and schema
    network.interface     overlay device existence, state and MTU
    network.routes        kernel routes for remote subnets
    network.fdb           FDB entries for live remote endpoints
    network.traffic       one-directional traffic on the overlay device
    network.connectivity  reachability of remote subnets
    system.docker         container runtime reachable
    system.container      overlay control-plane container running and stable
    system.disk           free disk space on the state partition
    system.memory         memory usage
    system.cpu            load average per CPU
"""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

import psutil

from overlay_agent.containers import ContainerRuntime
from overlay_agent.errors import StoreError
from overlay_agent.health.registry import HealthRegistry
from overlay_agent.models import ComponentStatus, HealthStatus
from overlay_agent.network.kernel import KernelNetwork, LinkStats
from overlay_agent.prober import STATUS_DOWN, STATUS_UP, ConnectivityProber
from overlay_agent.store import KVStore

if TYPE_CHECKING:
    from overlay_agent.reconciler import NetworkReconciler

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    status: HealthStatus
    message: str


def completeness_status(present: int, expected: int, what: str) -> CheckResult:
    """Critical if none present, Degraded if partial, else Healthy."""
    if expected == 0:
        return CheckResult(HealthStatus.HEALTHY, f"No remote {what} expected")
    missing = expected - present
    if present == 0:
        return CheckResult(HealthStatus.CRITICAL, f"Missing all {expected} {what}")
    if missing > 0:
        return CheckResult(HealthStatus.DEGRADED, f"Missing {missing} out of {expected} {what}")
    return CheckResult(HealthStatus.HEALTHY, f"All {expected} {what} present")


class HealthChecker(ABC):
    """Base class for component checkers."""

    component: str = ""

    def __init__(self, registry: HealthRegistry):
        self.registry = registry

    @abstractmethod
    async def evaluate(self) -> CheckResult:
        """Observe the subsystem and decide its status."""

    async def check(self) -> ComponentStatus:
        try:
            result = await self.evaluate()
        except Exception as e:
            logger.exception(f"Health check {self.component} failed")
            result = CheckResult(HealthStatus.UNKNOWN, f"Check failed: {type(e).__name__}: {e}")
        self.registry.update_status(self.component, result.status, result.message)
        return self.registry.get_status(self.component)


# ----------------------------------------------------------------------
# Network checkers
# ----------------------------------------------------------------------


class EtcdChecker(HealthChecker):
    component = "network.etcd"

    def __init__(self, registry: HealthRegistry, store: KVStore, schema_marker: str, subnet_prefix: str, attempts: int = 2):
        super().__init__(registry)
        self.store = store
        self.schema_marker = schema_marker
        self.subnet_prefix = subnet_prefix
        self.attempts = attempts

    async def evaluate(self) -> CheckResult:
        reachable = False
        for attempt in range(self.attempts):
            if await self.store.health():
                reachable = True
                break
            if attempt + 1 < self.attempts:
                await asyncio.sleep(1)
        if not reachable:
            return CheckResult(HealthStatus.CRITICAL, f"Cannot reach coordination store after {self.attempts} attempts")
        try:
            if await self.store.get(self.schema_marker) is None:
                return CheckResult(HealthStatus.DEGRADED, "Coordination store reachable but schema root missing")
            subnets = await self.store.list_keys(self.subnet_prefix)
        except StoreError as e:
            return CheckResult(HealthStatus.DEGRADED, f"Coordination store reachable but data not accessible: {e}")
        return CheckResult(HealthStatus.HEALTHY, f"Coordination store healthy ({len(subnets)} subnet leases)")


class InterfaceChecker(HealthChecker):
    component = "network.interface"

    def __init__(self, registry: HealthRegistry, kernel: KernelNetwork, device: str, mtu: int):
        super().__init__(registry)
        self.kernel = kernel
        self.device = device
        self.mtu = mtu

    async def evaluate(self) -> CheckResult:
        info = await self.kernel.link_info(self.device)
        if not info.exists:
            return CheckResult(HealthStatus.CRITICAL, f"Overlay interface {self.device} does not exist")
        if not info.admin_up:
            return CheckResult(HealthStatus.CRITICAL, f"Overlay interface {self.device} is administratively down")
        # VXLAN devices report UNKNOWN operstate when working normally
        if info.operstate not in ("UP", "UNKNOWN"):
            return CheckResult(HealthStatus.DEGRADED, f"Overlay interface state is {info.operstate}")
        if self.mtu and info.mtu != self.mtu:
            return CheckResult(HealthStatus.DEGRADED, f"Overlay interface MTU is {info.mtu}, expected {self.mtu}")
        return CheckResult(HealthStatus.HEALTHY, f"Overlay interface {self.device} is up (mtu {info.mtu})")


class RouteChecker(HealthChecker):
    component = "network.routes"

    def __init__(self, registry: HealthRegistry, kernel: KernelNetwork, reconciler: "NetworkReconciler"):
        super().__init__(registry)
        self.kernel = kernel
        self.reconciler = reconciler

    async def evaluate(self) -> CheckResult:
        try:
            desired = await self.reconciler.current_desired_state()
        except StoreError as e:
            return CheckResult(HealthStatus.UNKNOWN, f"Cannot determine expected routes: {e}")
        expected = set(desired.routes)
        present = {r.cidr for r in await self.kernel.list_routes()} & expected
        return completeness_status(len(present), len(expected), "subnet routes")


class FdbChecker(HealthChecker):
    component = "network.fdb"

    def __init__(self, registry: HealthRegistry, kernel: KernelNetwork, reconciler: "NetworkReconciler", device: str):
        super().__init__(registry)
        self.kernel = kernel
        self.reconciler = reconciler
        self.device = device

    async def evaluate(self) -> CheckResult:
        try:
            desired = await self.reconciler.current_desired_state()
        except StoreError as e:
            return CheckResult(HealthStatus.UNKNOWN, f"Cannot determine expected endpoints: {e}")
        expected = set(desired.fdb)
        present = {e.mac for e in await self.kernel.list_fdb(self.device) if not e.local} & expected
        return completeness_status(len(present), len(expected), "endpoint FDB entries")


class TrafficChecker(HealthChecker):
    """Flags sustained one-directional traffic on the overlay device."""

    component = "network.traffic"

    def __init__(
        self,
        registry: HealthRegistry,
        kernel: KernelNetwork,
        device: str,
        ratio_threshold: float = 10.0,
        min_bytes: int = 10000,
        sustained_samples: int = 2,
    ):
        super().__init__(registry)
        self.kernel = kernel
        self.device = device
        self.ratio_threshold = ratio_threshold
        self.min_bytes = min_bytes
        self.sustained_samples = max(1, sustained_samples)
        self._previous: Optional[LinkStats] = None
        self._streak = 0
        self._direction = ""

    def _classify(self, rx: int, tx: int) -> str:
        if rx >= self.min_bytes and rx > tx * self.ratio_threshold:
            return "receiving only"
        if tx >= self.min_bytes and tx > rx * self.ratio_threshold:
            return "sending only"
        return ""

    async def evaluate(self) -> CheckResult:
        stats = await self.kernel.link_stats(self.device)
        if stats is None:
            self._previous = None
            return CheckResult(HealthStatus.UNKNOWN, f"Overlay interface {self.device} does not exist")
        previous, self._previous = self._previous, stats
        if previous is None:
            return CheckResult(HealthStatus.UNKNOWN, "First traffic sample collected")

        rx = stats.rx_bytes - previous.rx_bytes
        tx = stats.tx_bytes - previous.tx_bytes
        if rx < 0 or tx < 0:
            # Counters reset (interface recreated)
            self._streak = 0
            return CheckResult(HealthStatus.UNKNOWN, "Traffic counters reset")

        direction = self._classify(rx, tx)
        if direction and direction == self._direction:
            self._streak += 1
        elif direction:
            self._streak = 1
        else:
            self._streak = 0
        self._direction = direction

        if direction and self._streak >= self.sustained_samples:
            return CheckResult(
                HealthStatus.DEGRADED,
                f"Possible one-way traffic issue ({direction}): rx {rx} bytes, tx {tx} bytes over {self._streak} samples",
            )
        return CheckResult(HealthStatus.HEALTHY, f"Traffic balanced: rx {rx} bytes, tx {tx} bytes")


class ConnectivityChecker(HealthChecker):
    component = "network.connectivity"

    def __init__(
        self,
        registry: HealthRegistry,
        prober: ConnectivityProber,
        reconciler: "NetworkReconciler",
        max_age: float = 300,
    ):
        super().__init__(registry)
        self.prober = prober
        self.reconciler = reconciler
        self.max_age = max_age

    async def evaluate(self) -> CheckResult:
        try:
            subnets = await self.reconciler.remote_subnets()
        except StoreError as e:
            return CheckResult(HealthStatus.UNKNOWN, f"Cannot determine remote subnets: {e}")
        if not subnets:
            return CheckResult(HealthStatus.HEALTHY, "No remote subnets to test")

        up = down = 0
        for cidr in subnets:
            status = self.prober.recent_status(cidr, self.max_age)
            if status is None:
                status = STATUS_UP if await self.prober.probe_subnet(cidr) else STATUS_DOWN
            if status == STATUS_UP:
                up += 1
            else:
                down += 1
        if up == 0:
            return CheckResult(HealthStatus.CRITICAL, f"All {down} remote subnets unreachable")
        if down:
            return CheckResult(HealthStatus.DEGRADED, f"{down} out of {len(subnets)} remote subnets unreachable")
        return CheckResult(HealthStatus.HEALTHY, f"All {up} remote subnets reachable")


# ----------------------------------------------------------------------
# System checkers
# ----------------------------------------------------------------------


class DockerChecker(HealthChecker):
    component = "system.docker"

    def __init__(self, registry: HealthRegistry, runtime: ContainerRuntime):
        super().__init__(registry)
        self.runtime = runtime

    async def evaluate(self) -> CheckResult:
        if not await self.runtime.ping():
            return CheckResult(HealthStatus.CRITICAL, "Docker service not running or not accessible")
        return CheckResult(HealthStatus.HEALTHY, "Docker service is running")


class ContainerChecker(HealthChecker):
    component = "system.container"

    def __init__(self, registry: HealthRegistry, runtime: ContainerRuntime, name: str, images: list[str]):
        super().__init__(registry)
        self.runtime = runtime
        self.name = name
        self.images = images

    async def evaluate(self) -> CheckResult:
        state = await self.runtime.find_container(self.name, self.images)
        if state is None:
            return CheckResult(HealthStatus.CRITICAL, f"Overlay container {self.name} not found")
        if not state.running:
            return CheckResult(HealthStatus.CRITICAL, f"Overlay container {state.name} is {state.status}")
        if state.is_flapping():
            return CheckResult(
                HealthStatus.DEGRADED,
                f"Overlay container {state.name} is flapping ({state.restart_count} restarts, up {int(state.uptime() or 0)}s)",
            )
        return CheckResult(HealthStatus.HEALTHY, f"Overlay container {state.name} is running")


class DiskChecker(HealthChecker):
    component = "system.disk"

    def __init__(self, registry: HealthRegistry, path: str, degraded_free: int, critical_free: int):
        super().__init__(registry)
        self.path = path
        self.degraded_free = degraded_free
        self.critical_free = critical_free

    def _usage_path(self) -> str:
        path = self.path
        while path and not os.path.exists(path):
            parent = os.path.dirname(path)
            if parent == path:
                break
            path = parent
        return path or "/"

    async def evaluate(self) -> CheckResult:
        usage = await asyncio.to_thread(psutil.disk_usage, self._usage_path())
        free = 100.0 - usage.percent
        if free < self.critical_free:
            return CheckResult(HealthStatus.CRITICAL, f"Critical disk space: {free:.1f}% free")
        if free < self.degraded_free:
            return CheckResult(HealthStatus.DEGRADED, f"Low disk space: {free:.1f}% free")
        return CheckResult(HealthStatus.HEALTHY, f"Disk space OK: {free:.1f}% free")


class MemoryChecker(HealthChecker):
    component = "system.memory"

    def __init__(self, registry: HealthRegistry, degraded_used: int, critical_used: int):
        super().__init__(registry)
        self.degraded_used = degraded_used
        self.critical_used = critical_used

    async def evaluate(self) -> CheckResult:
        used = psutil.virtual_memory().percent
        if used > self.critical_used:
            return CheckResult(HealthStatus.CRITICAL, f"Critical memory usage: {used:.1f}%")
        if used > self.degraded_used:
            return CheckResult(HealthStatus.DEGRADED, f"High memory usage: {used:.1f}%")
        return CheckResult(HealthStatus.HEALTHY, f"Memory usage OK: {used:.1f}%")


class CpuChecker(HealthChecker):
    component = "system.cpu"

    def __init__(self, registry: HealthRegistry, degraded_load: float, critical_load: float):
        super().__init__(registry)
        self.degraded_load = degraded_load
        self.critical_load = critical_load

    async def evaluate(self) -> CheckResult:
        load1, _, _ = psutil.getloadavg()
        cpus = psutil.cpu_count() or 1
        per_cpu = load1 / cpus
        if per_cpu > self.critical_load:
            return CheckResult(HealthStatus.CRITICAL, f"Critical CPU load: {load1:.2f} on {cpus} CPUs")
        if per_cpu > self.degraded_load:
            return CheckResult(HealthStatus.DEGRADED, f"High CPU load: {load1:.2f} on {cpus} CPUs")
        return CheckResult(HealthStatus.HEALTHY, f"CPU load normal: {load1:.2f} on {cpus} CPUs")


# ----------------------------------------------------------------------
# Monitor
# ----------------------------------------------------------------------


class HealthMonitor:
    """Runs checkers and aggregates their results."""

    def __init__(
        self,
        registry: HealthRegistry,
        checkers: Iterable[HealthChecker],
        cache_validity: float = 30,
    ):
        self.registry = registry
        self.cache_validity = cache_validity
        self._checkers: dict[str, HealthChecker] = {}
        for checker in checkers:
            if registry.is_enabled(checker.component):
                self._checkers[checker.component] = checker
        # Statuses nothing re-checks would pin the system status forever
        registry.retain(self._checkers)

    @property
    def components(self) -> list[str]:
        return list(self._checkers)

    async def check_component(self, component: str, force: bool = False) -> ComponentStatus:
        """Run one checker, reusing a status younger than the cache validity.

        Components without a checker always read as Unknown.
        """
        checker = self._checkers.get(component)
        if checker is None:
            return ComponentStatus(component, HealthStatus.UNKNOWN, "No checker registered", 0)
        if not force and not self.registry.is_stale(component, self.cache_validity):
            return self.registry.get_status(component)
        return await checker.check()

    async def run_checks(self, components: Optional[Iterable[str]] = None) -> HealthStatus:
        selected = list(components) if components is not None else list(self._checkers)
        for name in selected:
            checker = self._checkers.get(name)
            if checker is not None:
                await checker.check()
        status = self.registry.system_status()
        logger.info(f"Health check complete: system {status.value}")
        return status
