"""Host liveness registry.

Each agent publishes a presence record for its own host under
``{config_prefix}/subnets/_host_status/{hostname}`` and refreshes it
periodically. Peers' records are the authoritative set of live overlay
participants: the reconciler builds the desired FDB from them and the FDB
health checker measures completeness against them.

Records older than the stale window are pruned by whichever host notices
first, except the reader's own record, which only its owner rewrites.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

import psutil

from overlay_agent.errors import RecordError, StoreError
from overlay_agent.network.kernel import KernelNetwork
from overlay_agent.schemas import HostStatusRecord, is_valid_mac
from overlay_agent.store import KVStore

logger = logging.getLogger(__name__)

REGISTER_ATTEMPTS = 3
REGISTER_RETRY_DELAY = 2.0


class HostLivenessRegistry:
    """Publishes this host's presence and reads peers' presence records."""

    def __init__(
        self,
        store: KVStore,
        kernel: KernelNetwork,
        hostname: str,
        config_prefix: str,
        device: str,
        state_dir: Path,
        refresh_interval: int = 300,
        cache_timeout: int = 60,
        public_ip: str = "",
        vni: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.kernel = kernel
        self.hostname = hostname
        self.device = device
        self.prefix = f"{config_prefix.rstrip('/')}/subnets/_host_status/"
        self.refresh_interval = refresh_interval
        self.cache_timeout = cache_timeout
        self.public_ip = public_ip
        self.vni = vni
        self._clock = clock
        self._registration_file = Path(state_dir) / "last_registration"
        self._last_write = self._load_last_registration()
        self._last_prune = 0.0
        # hostname -> (fetched_at, record or None)
        self._cache: dict[str, tuple[float, Optional[HostStatusRecord]]] = {}

    def key_for(self, hostname: str) -> str:
        return f"{self.prefix}{hostname}"

    # ------------------------------------------------------------------
    # Own record
    # ------------------------------------------------------------------

    @property
    def last_write(self) -> float:
        return self._last_write

    async def build_own_record(self) -> Optional[HostStatusRecord]:
        mac = await self.kernel.read_mac(self.device)
        if not is_valid_mac(mac):
            logger.error(f"Cannot build host status: no endpoint MAC on {self.device}")
            return None
        address = self.public_ip or await self.kernel.primary_address()
        if not address:
            logger.error("Cannot build host status: no primary address")
            return None
        return HostStatusRecord.build(
            hostname=self.hostname,
            vtep_mac=mac,
            primary_ip=address,
            boot_time=psutil.boot_time(),
            timestamp=int(self._clock()),
            vni=self.vni,
        )

    async def announce(self, force: bool = False) -> bool:
        """Write this host's presence record.

        Calls within the refresh interval of the last successful write are
        no-ops that return True.
        """
        now = self._clock()
        if not force and self._last_write and now - self._last_write < self.refresh_interval:
            return True

        record = await self.build_own_record()
        if record is None:
            return False

        key = self.key_for(self.hostname)
        for attempt in range(1, REGISTER_ATTEMPTS + 1):
            try:
                await self.store.put(key, record.to_json())
                break
            except StoreError as e:
                logger.warning(f"Host status registration attempt {attempt}/{REGISTER_ATTEMPTS} failed: {e}")
                if attempt < REGISTER_ATTEMPTS:
                    await asyncio.sleep(REGISTER_RETRY_DELAY)
        else:
            logger.error(f"Failed to register host status for {self.hostname}")
            return False

        self._last_write = now
        self._save_last_registration(now)
        self._cache[self.hostname] = (now, record)
        logger.info(f"Registered host status for {self.hostname} (mac={record.vtep_mac}, ip={record.primary_ip})")
        return True

    def _load_last_registration(self) -> float:
        try:
            return float(self._registration_file.read_text().strip())
        except (OSError, ValueError):
            return 0.0

    def _save_last_registration(self, ts: float) -> None:
        try:
            self._registration_file.parent.mkdir(parents=True, exist_ok=True)
            self._registration_file.write_text(f"{int(ts)}\n")
        except OSError as e:
            logger.warning(f"Failed to record registration time: {e}")

    # ------------------------------------------------------------------
    # Peer records
    # ------------------------------------------------------------------

    async def _fetch(self, hostname: str) -> Optional[HostStatusRecord]:
        key = self.key_for(hostname)
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return HostStatusRecord.from_json(key, raw)
        except RecordError as e:
            logger.warning(f"Skipping malformed host status record: {e}")
            return None

    async def get_remote_status(self, hostname: str) -> Optional[HostStatusRecord]:
        """Read-through cached lookup of a peer's record."""
        now = self._clock()
        cached = self._cache.get(hostname)
        if cached is not None and now - cached[0] < self.cache_timeout:
            return cached[1]
        record = await self._fetch(hostname)
        self._cache[hostname] = (now, record)
        return record

    async def all_records(self) -> dict[str, HostStatusRecord]:
        """Fetch every host status record, refreshing the cache.

        Raises:
            StoreUnavailableError: when the store cannot be reached.
        """
        now = self._clock()
        records: dict[str, HostStatusRecord] = {}
        for key in await self.store.list_keys(self.prefix):
            hostname = key[len(self.prefix):].strip("/")
            if not hostname or "/" in hostname:
                continue
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                record = HostStatusRecord.from_json(key, raw)
            except RecordError as e:
                logger.warning(f"Skipping malformed host status record: {e}")
                continue
            records[hostname] = record
            self._cache[hostname] = (now, record)
        return records

    async def active_records(self, max_age: int) -> dict[str, HostStatusRecord]:
        cutoff = self._clock() - max_age
        return {
            hostname: record
            for hostname, record in (await self.all_records()).items()
            if record.timestamp >= cutoff
        }

    async def list_active(self, max_age: int) -> list[str]:
        """Hostnames whose presence record is younger than ``max_age``."""
        return sorted(await self.active_records(max_age))

    async def is_host_active(self, hostname: str, max_age: int) -> bool:
        record = await self.get_remote_status(hostname)
        return record is not None and record.timestamp >= self._clock() - max_age

    async def prune(self, max_age: int) -> int:
        """Delete peers' records older than ``max_age``. Returns count deleted."""
        now = self._clock()
        self._last_prune = now
        cutoff = now - max_age
        removed = 0
        for hostname, record in (await self.all_records()).items():
            if hostname == self.hostname or record.timestamp >= cutoff:
                continue
            try:
                if await self.store.delete(self.key_for(hostname)):
                    removed += 1
                    logger.info(f"Pruned stale host status for {hostname} (last seen {int(now - record.timestamp)}s ago)")
            except StoreError as e:
                logger.warning(f"Failed to prune host status for {hostname}: {e}")
                continue
            self._cache.pop(hostname, None)
        return removed

    async def maybe_prune(self, max_age: int, interval: int) -> int:
        if self._clock() - self._last_prune < interval:
            return 0
        return await self.prune(max_age)
