"""Container runtime access via the Docker SDK.

All Docker SDK calls are blocking, so the async wrappers push them onto a
worker thread with ``asyncio.to_thread``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import docker
from docker.errors import APIError, DockerException, NotFound

logger = logging.getLogger(__name__)

# Networks Docker always creates; never overlay subnets.
BUILTIN_NETWORKS = {"bridge", "host", "none"}

FLAPPING_UPTIME = 300  # seconds
FLAPPING_RESTARTS = 2


@dataclass
class ContainerState:
    """Snapshot of one container's runtime state."""

    name: str
    id: str
    status: str  # running, restarting, exited, ...
    restart_count: int = 0
    started_at: Optional[datetime] = None
    image: str = ""

    @property
    def running(self) -> bool:
        return self.status == "running"

    def uptime(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.started_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - self.started_at).total_seconds()

    def is_flapping(self, now: Optional[datetime] = None) -> bool:
        uptime = self.uptime(now)
        return uptime is not None and uptime < FLAPPING_UPTIME and self.restart_count > FLAPPING_RESTARTS

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status,
            "restart_count": self.restart_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "image": self.image,
        }


@dataclass
class NetworkInfo:
    name: str
    subnet: str
    driver: str = ""


def _parse_docker_time(value: str) -> Optional[datetime]:
    if not value or value.startswith("0001-"):
        return None
    # Docker emits RFC3339 with nanoseconds; trim to microseconds for fromisoformat
    value = value.replace("Z", "+00:00")
    main, _, tz = value.partition("+")
    if "." in main:
        head, frac = main.split(".", 1)
        main = f"{head}.{frac[:6]}"
    try:
        parsed = datetime.fromisoformat(f"{main}+{tz}" if tz else main)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _state_from_container(container) -> ContainerState:
    attrs = container.attrs or {}
    state = attrs.get("State", {})
    try:
        image = container.image.tags[0] if container.image.tags else container.image.short_id
    except (NotFound, APIError):
        image = attrs.get("Config", {}).get("Image", "")
    return ContainerState(
        name=container.name,
        id=container.id,
        status=state.get("Status", container.status),
        restart_count=int(attrs.get("RestartCount", 0)),
        started_at=_parse_docker_time(state.get("StartedAt", "")),
        image=image,
    )


class ContainerRuntime:
    """Thin async facade over the Docker SDK for the agent's needs."""

    def __init__(self, client: Optional[docker.DockerClient] = None, timeout: int = 60):
        self._docker = client
        self._timeout = timeout

    @property
    def docker(self) -> docker.DockerClient:
        """Lazy-initialize Docker client."""
        if self._docker is None:
            self._docker = docker.from_env(timeout=self._timeout)
        return self._docker

    def reset_client(self) -> None:
        """Drop the cached client, e.g. after the daemon restarted."""
        self._docker = None

    # ---- Sync implementations (run in a worker thread) ----

    def _sync_ping(self) -> bool:
        try:
            return bool(self.docker.ping())
        except DockerException as e:
            logger.debug(f"Docker ping failed: {e}")
            self.reset_client()
            return False

    def _sync_list_networks(self) -> list[NetworkInfo]:
        networks = []
        for net in self.docker.networks.list():
            attrs = net.attrs or {}
            name = attrs.get("Name", net.name)
            if name in BUILTIN_NETWORKS:
                continue
            configs = (attrs.get("IPAM") or {}).get("Config") or []
            subnet = configs[0].get("Subnet") if configs else None
            if subnet:
                networks.append(NetworkInfo(name=name, subnet=subnet, driver=attrs.get("Driver", "")))
        return networks

    def _sync_find_container(self, name: str, images: list[str]) -> Optional[ContainerState]:
        try:
            return _state_from_container(self.docker.containers.get(name))
        except NotFound:
            pass
        for image in images:
            matches = self.docker.containers.list(all=True, filters={"ancestor": image})
            if matches:
                return _state_from_container(matches[0])
        return None

    def _sync_inspect(self, name_or_id: str) -> Optional[ContainerState]:
        try:
            return _state_from_container(self.docker.containers.get(name_or_id))
        except NotFound:
            return None

    def _sync_restart(self, name_or_id: str, timeout: int) -> None:
        self.docker.containers.get(name_or_id).restart(timeout=timeout)

    def _sync_list_on_network(self, network: str) -> list[ContainerState]:
        return [
            _state_from_container(c)
            for c in self.docker.containers.list(all=True, filters={"network": network})
        ]

    def _sync_running_count(self) -> int:
        return len(self.docker.containers.list(filters={"status": "running"}))

    def _sync_info(self) -> dict:
        info = self.docker.info()
        return {
            "server_version": info.get("ServerVersion"),
            "containers": info.get("Containers"),
            "containers_running": info.get("ContainersRunning"),
            "driver": info.get("Driver"),
        }

    # ---- Async API ----

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._sync_ping)

    async def list_networks(self) -> list[NetworkInfo]:
        return await asyncio.to_thread(self._sync_list_networks)

    async def find_container(self, name: str, images: list[str]) -> Optional[ContainerState]:
        """Find a container by name, then by ancestor image."""
        return await asyncio.to_thread(self._sync_find_container, name, images)

    async def inspect(self, name_or_id: str) -> Optional[ContainerState]:
        return await asyncio.to_thread(self._sync_inspect, name_or_id)

    async def restart(self, name_or_id: str, timeout: int = 10) -> None:
        await asyncio.to_thread(self._sync_restart, name_or_id, timeout)

    async def list_on_network(self, network: str) -> list[ContainerState]:
        return await asyncio.to_thread(self._sync_list_on_network, network)

    async def running_count(self) -> int:
        return await asyncio.to_thread(self._sync_running_count)

    async def info(self) -> dict:
        return await asyncio.to_thread(self._sync_info)
