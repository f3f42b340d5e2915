"""Forward-accept rules for overlay traffic.

Hosts whose FORWARD policy is DROP (Docker sets this) would otherwise drop
traffic between the overlay device and local bridges. ``IptablesFirewall``
keeps a dedicated chain accepting everything from or to the overlay network
and makes sure FORWARD jumps to it. Every step is check-then-add, so running
it each pass is cheap once the rules exist.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from overlay_agent.errors import KernelCommandError
from overlay_agent.network.cmd import run_cmd

logger = logging.getLogger(__name__)

RULE_COMMENT = "overlay forward"


class Firewall(ABC):
    """Keeps overlay traffic forwardable."""

    @abstractmethod
    async def ensure_forward_accept(self, network: str) -> int:
        """Install missing rules for ``network``. Returns the number added.

        Raises:
            KernelCommandError: when a rule cannot be installed.
        """


class NoopFirewall(Firewall):
    """Used when firewall management is disabled or iptables is missing."""

    async def ensure_forward_accept(self, network: str) -> int:
        return 0


class IptablesFirewall(Firewall):
    def __init__(self, chain: str = "FLANNEL-FWD", timeout: float = 10.0):
        self.chain = chain
        self._timeout = timeout

    async def _iptables(self, *args: str) -> tuple[int, str]:
        code, _, stderr = await run_cmd(["iptables", "-w", *args], timeout=self._timeout)
        return code, stderr

    async def _ensure(self, check: list[str], add: list[str]) -> bool:
        code, _ = await self._iptables("-C", *check)
        if code == 0:
            return False
        code, stderr = await self._iptables(*add)
        if code != 0:
            raise KernelCommandError(["iptables", *add], code, stderr)
        return True

    async def ensure_forward_accept(self, network: str) -> int:
        added = 0
        code, _ = await self._iptables("-n", "-L", self.chain)
        if code != 0:
            code, stderr = await self._iptables("-N", self.chain)
            if code != 0:
                raise KernelCommandError(["iptables", "-N", self.chain], code, stderr)
            logger.info(f"Created iptables chain {self.chain}")

        for direction in ("-s", "-d"):
            rule = [self.chain, direction, network, "-m", "comment", "--comment", RULE_COMMENT, "-j", "ACCEPT"]
            if await self._ensure(rule, ["-A", *rule]):
                added += 1
                logger.info(f"Added forward accept rule {direction} {network} to {self.chain}")

        jump = ["FORWARD", "-j", self.chain]
        if await self._ensure(jump, ["-A", *jump]):
            added += 1
            logger.info(f"Added jump from FORWARD to {self.chain}")
        return added
