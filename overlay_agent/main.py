"""Overlay convergence agent.

This agent runs on each overlay host and handles:
- Host presence announcements and stale-peer pruning
- FDB and route reconciliation on the overlay device
- Reachability probes to remote subnets
- Component health checks
- Escalating recovery when the host is unhealthy

The daemon exposes a small local status API; ``--once`` and ``--diagnose``
run without it (see ``overlay_agent.__main__``).
"""
from __future__ import annotations

import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from docker.errors import DockerException
from fastapi import FastAPI, Response

from overlay_agent.config import Settings
from overlay_agent.containers import ContainerRuntime
from overlay_agent.errors import ConfigurationError, StoreError
from overlay_agent.health.checkers import (
    ConnectivityChecker,
    ContainerChecker,
    CpuChecker,
    DiskChecker,
    DockerChecker,
    EtcdChecker,
    FdbChecker,
    HealthMonitor,
    InterfaceChecker,
    MemoryChecker,
    RouteChecker,
    TrafficChecker,
)
from overlay_agent.health.registry import HealthRegistry, LoggingObserver
from overlay_agent.hosts import HostLivenessRegistry
from overlay_agent.metrics import get_metrics
from overlay_agent.models import HealthStatus, RecoveryLevel
from overlay_agent.network.cmd import binary_available
from overlay_agent.network.firewall import Firewall, IptablesFirewall, NoopFirewall
from overlay_agent.network.gateways import ExtraRoute, GatewayMap
from overlay_agent.network.kernel import IpRoute2Kernel, KernelNetwork
from overlay_agent.prober import ConnectivityProber
from overlay_agent.reconciler import NetworkReconciler
from overlay_agent.recovery.actions import HostRecoveryActions, NoopRecoveryActions, has_host_privileges
from overlay_agent.recovery.orchestrator import RecoveryOrchestrator
from overlay_agent.recovery.state import LevelPolicy, RecoveryState
from overlay_agent.registry import get_agent
from overlay_agent.schemas import ComponentStatusOut, ReconcileResponse, StatusResponse
from overlay_agent.store import KVStore, create_store
from overlay_agent.subnets import SubnetRegistrar

logger = logging.getLogger(__name__)

REQUIRED_BINARIES = ("ip", "bridge")


def _split_list(text: str) -> list[str]:
    return [item.strip() for item in text.split(",") if item.strip()]


class ConvergenceAgent:
    """One host's convergence loop, composed from its collaborators."""

    def __init__(
        self,
        settings: Settings,
        hostname: str,
        store: KVStore,
        kernel: KernelNetwork,
        runtime: ContainerRuntime,
        hosts: HostLivenessRegistry,
        subnets: SubnetRegistrar,
        reconciler: NetworkReconciler,
        prober: ConnectivityProber,
        monitor: HealthMonitor,
        recovery_state: RecoveryState,
        orchestrator: RecoveryOrchestrator,
    ):
        self.settings = settings
        self.hostname = hostname
        self.store = store
        self.kernel = kernel
        self.runtime = runtime
        self.hosts = hosts
        self.subnets = subnets
        self.reconciler = reconciler
        self.prober = prober
        self.monitor = monitor
        self.registry = monitor.registry
        self.recovery_state = recovery_state
        self.orchestrator = orchestrator
        self.last_cycle: Optional[float] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def check_capabilities(self) -> None:
        """Raise ConfigurationError if the host cannot be managed at all."""
        missing = [name for name in REQUIRED_BINARIES if not binary_available(name)]
        if missing:
            raise ConfigurationError(f"Required commands not found: {', '.join(missing)}")

    async def initialize(self) -> None:
        self.check_capabilities()
        try:
            Path(self.settings.state_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create state directory {self.settings.state_dir}: {e}") from e

        restored = await self.reconciler.restore_from_snapshot()
        if restored is not None:
            logger.info(f"Restored network state from snapshot: {restored.total_mutations} mutations")

        try:
            await self.subnets.initialize_schema()
        except StoreError as e:
            logger.warning(f"Cannot initialize store schema: {e}")

        await self.hosts.announce(force=True)

        try:
            await self.subnets.cleanup_localhost_entries()
        except StoreError as e:
            logger.warning(f"Cannot clean up localhost leases: {e}")

        try:
            count = await self.subnets.register_local_subnets()
            logger.info(f"Registered {count} local overlay subnets")
        except (StoreError, DockerException) as e:
            logger.warning(f"Cannot register local subnets: {e}")

        try:
            await self.subnets.detect_conflicts()
        except (StoreError, DockerException) as e:
            logger.warning(f"Cannot check for subnet conflicts: {e}")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _announce(self) -> None:
        await self.hosts.announce()

    async def _prune(self) -> None:
        await self.hosts.maybe_prune(self.settings.stale_host_max_age, self.settings.prune_interval)

    async def _reconcile(self) -> None:
        await self.reconciler.reconcile()

    async def _probe(self) -> None:
        await self.prober.run_connectivity_tests(await self.reconciler.remote_subnets())

    async def _health(self) -> None:
        await self.monitor.run_checks()

    async def _recover(self) -> None:
        if self.registry.system_status() in (HealthStatus.CRITICAL, HealthStatus.DEGRADED):
            await self.orchestrator.run_recovery_cycle()

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> HealthStatus:
        """Run every phase once. A failing phase is logged and skipped."""
        phases: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("announce", self._announce),
            ("prune", self._prune),
            ("reconcile", self._reconcile),
            ("connectivity", self._probe),
            ("health", self._health),
            ("recovery", self._recover),
        ]
        for name, phase in phases:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Shutdown requested, stopping cycle before {name}")
                break
            try:
                await phase()
            except Exception:
                logger.exception(f"Cycle phase {name} failed")
        self.last_cycle = time.time()
        return self.registry.system_status()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        await self.initialize()
        logger.info(f"Convergence loop started on {self.hostname} (interval {self.settings.interval}s)")
        while not stop_event.is_set():
            status = await self.run_cycle(stop_event)
            logger.info(f"Cycle complete: system {status.value}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Convergence loop stopped")

    async def run_once(self) -> int:
        """Initialize and run one cycle. Exit code 1 only when Critical."""
        await self.initialize()
        await self.reconciler.reconcile(force=True)
        status = await self.run_cycle()
        logger.info(f"Single run complete: system {status.value}")
        return 1 if status is HealthStatus.CRITICAL else 0

    async def close(self) -> None:
        await self.store.close()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def status(self) -> StatusResponse:
        last = self.reconciler.last_result
        return StatusResponse(
            hostname=self.hostname,
            system_status=self.registry.system_status().value,
            recovery_level=self.orchestrator.current_level.label,
            components=[
                ComponentStatusOut(**s.to_dict())
                for _, s in sorted(self.registry.get_all().items())
            ],
            last_reconcile=ReconcileResponse(**last.to_dict()) if last else None,
        )

    async def diagnose(self) -> dict[str, Any]:
        """Collect a read-only dump of everything the agent looks at."""

        async def section(fetch: Callable[[], Awaitable[Any]]) -> Any:
            try:
                return await fetch()
            except Exception as e:
                logger.warning(f"Diagnostics section failed: {e}")
                return {"error": f"{type(e).__name__}: {e}"}

        device = self.settings.overlay_device

        async def docker_status() -> dict:
            if not await self.runtime.ping():
                return {"reachable": False}
            return {"reachable": True, **(await self.runtime.info())}

        async def container() -> Optional[dict]:
            state = await self.runtime.find_container(
                self.settings.flannel_container_name, _split_list(self.settings.flannel_images)
            )
            return state.to_dict() if state else None

        async def link() -> dict:
            return (await self.kernel.link_info(device)).to_dict()

        async def routes() -> list[dict]:
            return [r.to_dict() for r in await self.kernel.list_routes()]

        async def fdb() -> list[dict]:
            return [e.to_dict() for e in await self.kernel.list_fdb(device)]

        async def subnet_records() -> list[dict]:
            return [
                {"cidr": r.cidr, "public_ip": r.public_ip, "vtep_mac": r.vtep_mac}
                for r in await self.subnets.list_subnets()
            ]

        async def host_records() -> dict:
            now = time.time()
            return {
                name: {
                    "primary_ip": r.primary_ip,
                    "vtep_mac": r.vtep_mac,
                    "age": int(now - r.timestamp),
                }
                for name, r in sorted((await self.hosts.all_records()).items())
            }

        async def addresses() -> list[str]:
            return sorted(await self.reconciler.own_addresses())

        async def overlay_containers() -> dict[str, list[dict]]:
            containers = {}
            for network in await self.subnets.discover_local_networks():
                if self.subnets.in_overlay(network.subnet):
                    members = await self.runtime.list_on_network(network.name)
                    containers[network.name] = [c.to_dict() for c in members]
            return containers

        async def conflicts() -> list[dict]:
            return [c.to_dict() for c in await self.subnets.detect_conflicts()]

        return {
            "hostname": self.hostname,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "addresses": await section(addresses),
            "docker": await section(docker_status),
            "etcd_healthy": await section(self.store.health),
            "overlay_link": await section(link),
            "routes": await section(routes),
            "fdb": await section(fdb),
            "flannel_container": await section(container),
            "overlay_containers": await section(overlay_containers),
            "subnets": await section(subnet_records),
            "subnet_conflicts": await section(conflicts),
            "hosts": await section(host_records),
            "gateway_map": self.reconciler.gateways.to_dict(),
            "connectivity": self.prober.status_snapshot(),
            "health": {
                "system": self.registry.system_status().value,
                "components": {n: s.to_dict() for n, s in sorted(self.registry.get_all().items())},
            },
            "recovery_history": [a.to_dict() for a in self.recovery_state.history()],
        }


# ----------------------------------------------------------------------
# Composition
# ----------------------------------------------------------------------


def build_default_agent(settings: Settings) -> ConvergenceAgent:
    """Wire the production collaborators from settings."""
    hostname = settings.hostname or socket.gethostname()
    state_dir = Path(settings.state_dir)
    images = _split_list(settings.flannel_images)

    store = create_store(settings)
    kernel = IpRoute2Kernel()
    runtime = ContainerRuntime()
    hosts = HostLivenessRegistry(
        store,
        kernel,
        hostname=hostname,
        config_prefix=settings.config_prefix,
        device=settings.overlay_device,
        state_dir=state_dir,
        refresh_interval=settings.host_status_update_interval,
        cache_timeout=settings.host_status_cache_timeout,
        public_ip=settings.public_ip,
        vni=settings.vni,
    )
    subnets = SubnetRegistrar(
        store,
        kernel,
        runtime,
        hostname=hostname,
        flannel_prefix=settings.flannel_prefix,
        config_prefix=settings.config_prefix,
        overlay_network=settings.overlay_network,
        device=settings.overlay_device,
        public_ip=settings.public_ip,
        vni=settings.vni,
    )
    if settings.manage_firewall and binary_available("iptables"):
        firewall: Firewall = IptablesFirewall(chain=settings.firewall_chain)
    else:
        if settings.manage_firewall:
            logger.warning("iptables not found; forward rules for overlay traffic are not managed")
        firewall = NoopFirewall()
    reconciler = NetworkReconciler(
        kernel,
        hosts,
        subnets,
        GatewayMap.parse(settings.host_gateway_map),
        device=settings.overlay_device,
        hostname=hostname,
        overlay_network=settings.overlay_network,
        state_dir=state_dir,
        extra_routes=ExtraRoute.parse_list(settings.extra_routes),
        firewall=firewall,
        public_ip=settings.public_ip,
        fdb_interval=settings.fdb_update_interval,
        routes_interval=settings.routes_update_interval,
        active_max_age=settings.active_host_max_age,
    )
    prober = ConnectivityProber(
        timeout=settings.conn_test_timeout,
        retry_count=settings.conn_retry_count,
        retry_delay=settings.conn_retry_delay,
        test_interval=settings.conn_test_interval,
        state_dir=state_dir,
    )

    registry = HealthRegistry(
        state_dir / "health_status.json",
        enabled_components=_split_list(settings.health_components) or None,
    )
    registry.add_observer(LoggingObserver())
    checkers = [
        EtcdChecker(registry, store, subnets.schema_marker, subnets.subnet_prefix),
        InterfaceChecker(registry, kernel, settings.overlay_device, settings.overlay_mtu),
        RouteChecker(registry, kernel, reconciler),
        FdbChecker(registry, kernel, reconciler, settings.overlay_device),
        TrafficChecker(
            registry,
            kernel,
            settings.overlay_device,
            ratio_threshold=settings.traffic_ratio_threshold,
            min_bytes=settings.traffic_min_bytes,
            sustained_samples=settings.traffic_sustained_samples,
        ),
        ConnectivityChecker(registry, prober, reconciler, max_age=settings.conn_test_interval),
        DockerChecker(registry, runtime),
        ContainerChecker(registry, runtime, settings.flannel_container_name, images),
        DiskChecker(registry, settings.state_dir, settings.disk_degraded_threshold, settings.disk_critical_threshold),
        MemoryChecker(registry, settings.memory_degraded_threshold, settings.memory_critical_threshold),
        CpuChecker(registry, settings.cpu_degraded_load, settings.cpu_critical_load),
    ]
    monitor = HealthMonitor(registry, checkers, cache_validity=settings.component_cache_validity)

    recovery_state = RecoveryState(
        state_dir / "recovery_state.json",
        policies={
            RecoveryLevel.INTERFACE: LevelPolicy(settings.interface_cooldown, settings.interface_max_attempts),
            RecoveryLevel.CONTAINER: LevelPolicy(settings.container_cooldown, settings.container_max_attempts),
            RecoveryLevel.SERVICE: LevelPolicy(settings.service_cooldown, settings.service_max_attempts),
        },
        history_retention=settings.history_retention,
    )
    if has_host_privileges():
        actions = HostRecoveryActions(
            kernel,
            runtime,
            reconciler,
            device=settings.overlay_device,
            mtu=settings.overlay_mtu,
            container_name=settings.flannel_container_name,
            container_images=images,
            container_timeout=settings.container_health_timeout,
            docker_timeout=settings.docker_restart_timeout,
        )
    else:
        logger.warning("Agent is not running as root; recovery actions are disabled")
        actions = NoopRecoveryActions()
    orchestrator = RecoveryOrchestrator(
        monitor,
        recovery_state,
        actions,
        prober=prober,
        reconciler=reconciler,
        check_interval=settings.recovery_check_interval,
        verify_retries=settings.verify_retries,
        verify_initial_wait=settings.verify_initial_wait,
        verify_backoff_step=settings.verify_backoff_step,
    )

    return ConvergenceAgent(
        settings,
        hostname,
        store,
        kernel,
        runtime,
        hosts,
        subnets,
        reconciler,
        prober,
        monitor,
        recovery_state,
        orchestrator,
    )


# ----------------------------------------------------------------------
# Status API
# ----------------------------------------------------------------------

_loop_task: Optional[asyncio.Task] = None
_stop_event: Optional[asyncio.Event] = None


async def _run_loop(agent: ConvergenceAgent, stop_event: asyncio.Event) -> None:
    try:
        await agent.run_forever(stop_event)
    except ConfigurationError as e:
        logger.critical(f"Agent cannot start: {e}")
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the convergence loop on startup, stop it on shutdown."""
    global _loop_task, _stop_event

    agent = get_agent()
    logger.info(f"Overlay agent starting on {agent.hostname}")
    _stop_event = asyncio.Event()
    _loop_task = asyncio.create_task(_run_loop(agent, _stop_event))

    yield

    _stop_event.set()
    if _loop_task:
        try:
            await asyncio.wait_for(_loop_task, timeout=agent.settings.etcd_timeout + 30)
        except asyncio.TimeoutError:
            _loop_task.cancel()
            try:
                await _loop_task
            except asyncio.CancelledError:
                pass
        except ConfigurationError:
            pass
    await agent.close()
    logger.info(f"Overlay agent on {agent.hostname} shutting down")


app = FastAPI(title="Overlay Agent", lifespan=lifespan)


@app.get("/health")
def health():
    """Liveness of the agent process and its loop."""
    agent = get_agent()
    return {
        "status": "ok",
        "hostname": agent.hostname,
        "loop_running": _loop_task is not None and not _loop_task.done(),
        "last_cycle": agent.last_cycle,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/status", response_model=StatusResponse)
def status():
    return get_agent().status()


@app.get("/recovery/history")
def recovery_history():
    agent = get_agent()
    return {
        "current_level": agent.orchestrator.current_level.label,
        "history": [a.to_dict() for a in agent.recovery_state.history()],
    }


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


@app.get("/diagnostics")
async def diagnostics():
    return await get_agent().diagnose()
