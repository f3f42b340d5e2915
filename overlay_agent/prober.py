"""Active reachability probes.

Three probe kinds share one retry policy:

- host: ICMP echo to an underlay or overlay address
- subnet: ICMP echo to a subnet's representative (first host) address
- service: TCP connect to ``address:port``

Each probe records its last result in a shared status map, which the
connectivity health checker and diagnostics read instead of probing again
within the same cycle.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from overlay_agent import metrics
from overlay_agent.network.cmd import run_cmd
from overlay_agent.persistence import load_json, save_json

logger = logging.getLogger(__name__)

STATUS_UP = "up"
STATUS_DOWN = "down"
STATUS_INVALID = "invalid"


@dataclass
class ProbeStatus:
    target: str
    status: str
    timestamp: float

    def to_dict(self) -> dict:
        return {"status": self.status, "timestamp": self.timestamp}


def representative_address(cidr: str) -> str:
    """First host address of a subnet (network address + 1)."""
    network = ipaddress.IPv4Network(cidr, strict=False)
    if network.prefixlen >= 31:
        return str(network.network_address)
    return str(network.network_address + 1)


class ConnectivityProber:
    """Runs reachability probes and keeps the last-known status per target."""

    def __init__(
        self,
        timeout: float = 3.0,
        retry_count: int = 3,
        retry_delay: float = 2.0,
        test_interval: int = 300,
        state_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay
        self.test_interval = test_interval
        self._clock = clock
        self._status_path = Path(state_dir) / "connectivity_status.json" if state_dir else None
        self.last_status: dict[str, ProbeStatus] = {}
        self._last_run = 0.0
        self._restore()

    # ------------------------------------------------------------------
    # Single attempts (overridable in tests)
    # ------------------------------------------------------------------

    async def _ping_once(self, address: str) -> bool:
        wait = str(max(1, int(round(self.timeout))))
        code, _, _ = await run_cmd(["ping", "-c", "1", "-W", wait, address], timeout=self.timeout + 2)
        return code == 0

    async def _connect_once(self, address: str, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _with_retries(self, kind: str, target: str, attempt: Callable[[], Awaitable[bool]]) -> bool:
        ok = False
        for i in range(1, self.retry_count + 1):
            if await attempt():
                ok = True
                break
            if i < self.retry_count:
                await asyncio.sleep(self.retry_delay)
        self._record(kind, target, STATUS_UP if ok else STATUS_DOWN)
        if not ok:
            logger.warning(f"{kind.capitalize()} {target} is unreachable after {self.retry_count} attempts")
        return ok

    async def probe_host(self, address: str) -> bool:
        try:
            ipaddress.IPv4Address(address)
        except ValueError:
            logger.warning(f"Invalid IP address for host probe: {address}")
            self._record("host", address, STATUS_INVALID)
            return False
        return await self._with_retries("host", address, lambda: self._ping_once(address))

    async def probe_subnet(self, cidr: str) -> bool:
        try:
            target = representative_address(cidr)
        except ValueError:
            logger.warning(f"Invalid subnet for probe: {cidr}")
            self._record("subnet", cidr, STATUS_INVALID)
            return False
        return await self._with_retries("subnet", cidr, lambda: self._ping_once(target))

    async def probe_service(self, address: str, port: int) -> bool:
        key = f"{address}:{port}"
        try:
            ipaddress.IPv4Address(address)
            port = int(port)
            if not 0 < port < 65536:
                raise ValueError(f"port {port} out of range")
        except ValueError:
            logger.warning(f"Invalid service target for probe: {key}")
            self._record("service", key, STATUS_INVALID)
            return False
        return await self._with_retries("service", key, lambda: self._connect_once(address, port))

    def recent_status(self, target: str, max_age: float) -> Optional[str]:
        """Status of ``target`` if probed within ``max_age`` seconds."""
        status = self.last_status.get(target)
        if status is None or self._clock() - status.timestamp > max_age:
            return None
        return status.status

    async def run_connectivity_tests(self, subnets: Iterable[str], force: bool = False) -> dict[str, bool]:
        """Probe every given subnet, at most once per test interval."""
        now = self._clock()
        if not force and now - self._last_run < self.test_interval:
            return {}
        self._last_run = now
        results = {}
        for cidr in subnets:
            results[cidr] = await self.probe_subnet(cidr)
        self._persist()
        up = sum(1 for ok in results.values() if ok)
        logger.info(f"Connectivity tests: {up}/{len(results)} subnets reachable")
        return results

    def status_snapshot(self) -> dict[str, dict]:
        return {target: status.to_dict() for target, status in self.last_status.items()}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record(self, kind: str, target: str, status: str) -> None:
        self.last_status[target] = ProbeStatus(target=target, status=status, timestamp=self._clock())
        metrics.probe_results.labels(kind=kind, result=status).inc()

    def _persist(self) -> None:
        if self._status_path is not None:
            save_json(self._status_path, self.status_snapshot())

    def _restore(self) -> None:
        if self._status_path is None:
            return
        data = load_json(self._status_path, {}) or {}
        for target, item in data.items():
            if isinstance(item, dict) and "status" in item:
                self.last_status[target] = ProbeStatus(
                    target=target, status=item["status"], timestamp=float(item.get("timestamp", 0))
                )
