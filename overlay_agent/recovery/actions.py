"""Corrective actions, one per recovery level.

Actions report whether they completed, not whether the problem is gone.
Verification is the orchestrator's job.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from docker.errors import DockerException

from overlay_agent.containers import ContainerRuntime
from overlay_agent.errors import KernelCommandError
from overlay_agent.network.cmd import run_cmd
from overlay_agent.network.kernel import KernelNetwork

if TYPE_CHECKING:
    from overlay_agent.reconciler import NetworkReconciler

logger = logging.getLogger(__name__)

LINK_BOUNCE_DELAY = 2
CONTAINER_POLL_INTERVAL = 5
DOCKER_POLL_INTERVAL = 5


def running_in_container(root: str = "/") -> bool:
    """Detect whether the agent itself runs inside a container."""
    base = Path(root)
    if (base / ".dockerenv").exists():
        return True
    try:
        cgroup = (base / "proc/1/cgroup").read_text()
    except OSError:
        return False
    return "docker" in cgroup or "containerd" in cgroup


class RecoveryActions(ABC):
    """Capability interface for the three recovery levels."""

    @abstractmethod
    async def interface_reset(self) -> bool: ...

    @abstractmethod
    async def container_restart(self) -> bool: ...

    @abstractmethod
    async def service_restart(self) -> bool: ...


class NoopRecoveryActions(RecoveryActions):
    """Used when the agent lacks the privileges to act on the host."""

    async def interface_reset(self) -> bool:
        logger.warning("Interface reset skipped: agent has no network privileges")
        return False

    async def container_restart(self) -> bool:
        logger.warning("Container restart skipped: agent has no container privileges")
        return False

    async def service_restart(self) -> bool:
        logger.warning("Service restart skipped: agent has no host privileges")
        return False


class HostRecoveryActions(RecoveryActions):
    """Recovery actions against the local kernel and container runtime."""

    def __init__(
        self,
        kernel: KernelNetwork,
        runtime: ContainerRuntime,
        reconciler: Optional["NetworkReconciler"],
        device: str,
        mtu: int,
        container_name: str,
        container_images: list[str],
        container_timeout: int = 30,
        docker_timeout: int = 120,
        in_container: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kernel = kernel
        self.runtime = runtime
        self.reconciler = reconciler
        self.device = device
        self.mtu = mtu
        self.container_name = container_name
        self.container_images = container_images
        self.container_timeout = container_timeout
        self.docker_timeout = docker_timeout
        self.in_container = running_in_container() if in_container is None else in_container
        self._sleep = sleep
        self._clock = clock

    # ---- Interface ----

    async def interface_reset(self) -> bool:
        logger.info(f"Resetting overlay interface {self.device}")
        try:
            await self.kernel.set_link(self.device, up=False)
            await self._sleep(LINK_BOUNCE_DELAY)
            await self.kernel.set_link(self.device, up=True)
            await self.kernel.set_mtu(self.device, self.mtu)
        except KernelCommandError as e:
            logger.error(f"Interface reset of {self.device} failed: {e}")
            return False

        if self.reconciler is not None:
            result = await self.reconciler.reconcile(force=True)
            logger.info(f"Post-reset reconciliation: {result.total_mutations} mutations")
        return True

    # ---- Container ----

    async def container_restart(self) -> bool:
        try:
            container = await self.runtime.find_container(self.container_name, self.container_images)
        except DockerException as e:
            logger.error(f"Unable to look up overlay container: {e}")
            return False
        if container is None:
            logger.error(f"Overlay container {self.container_name} not found, cannot restart")
            return False

        logger.info(f"Restarting overlay container {container.name} ({container.id[:12]})")
        try:
            await self.runtime.restart(container.id)
        except DockerException as e:
            logger.error(f"Restart of container {container.name} failed: {e}")
            return False

        deadline = self._clock() + self.container_timeout
        while self._clock() < deadline:
            await self._sleep(CONTAINER_POLL_INTERVAL)
            try:
                state = await self.runtime.inspect(container.id)
            except DockerException as e:
                logger.debug(f"Inspect after restart failed: {e}")
                continue
            if state is not None and state.running and state.status != "restarting" and not state.is_flapping():
                logger.info(f"Container {container.name} is running after restart")
                return True

        logger.warning(f"Container {container.name} not stable within {self.container_timeout}s")
        return False

    # ---- Service ----

    def _restart_command(self) -> list[str]:
        cmd = ["systemctl", "restart", "docker"]
        if self.in_container:
            return ["nsenter", "-t", "1", "-m", "-u", "-n", "-i", *cmd]
        return cmd

    async def service_restart(self) -> bool:
        try:
            before = await self.runtime.running_count()
        except DockerException:
            before = None

        cmd = self._restart_command()
        logger.warning(f"Restarting container runtime service: {' '.join(cmd)}")
        code, _, stderr = await run_cmd(cmd, timeout=self.docker_timeout)
        if code != 0:
            logger.error(f"Service restart failed (rc={code}): {stderr.strip()}")
            return False

        self.runtime.reset_client()
        deadline = self._clock() + self.docker_timeout
        while self._clock() < deadline:
            await self._sleep(DOCKER_POLL_INTERVAL)
            if await self.runtime.ping():
                break
        else:
            logger.error(f"Container runtime did not come back within {self.docker_timeout}s")
            return False

        try:
            after = await self.runtime.running_count()
        except DockerException:
            after = None
        if before is not None and after is not None and after < before:
            logger.warning(f"Running containers dropped from {before} to {after} after service restart")
        else:
            logger.info(f"Container runtime restarted ({after} containers running)")
        return True


def has_host_privileges() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0
