"""Escalating recovery for unhealthy components.

One cycle starts at the interface level and walks Interface -> Container ->
Service until an action is verified to have helped or the levels run out:

- a level refused by cooldown or attempt cap is skipped (escalate)
- an executed level is verified by re-running the affected checkers
- verified success resets the level to NONE and ends the cycle
- verified failure escalates to the next level

Interface-level recovery counts Degraded as success, since routes and FDB
entries may take another reconcile pass to fully converge. Container and
service levels require Healthy.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from overlay_agent.errors import StoreError
from overlay_agent.health.checkers import HealthMonitor
from overlay_agent.models import HealthStatus, RecoveryLevel, RecoveryOutcome
from overlay_agent.prober import ConnectivityProber
from overlay_agent.recovery.actions import RecoveryActions
from overlay_agent.recovery.state import RecoveryState

if TYPE_CHECKING:
    from overlay_agent.reconciler import NetworkReconciler

logger = logging.getLogger(__name__)

MAX_TRANSITIONS = 3

# Settle time after an action before verification starts
LEVEL_DELAYS = {
    RecoveryLevel.INTERFACE: 5,
    RecoveryLevel.CONTAINER: 10,
    RecoveryLevel.SERVICE: 30,
}

# Recovering a component re-checks, but never recovers, these
DEPENDENCIES = {
    "network.interface": ["network.routes", "network.connectivity"],
    "system.docker": ["system.container"],
}

CONNECTIVITY_COMPONENT = "network.connectivity"


def map_component_to_level(component: str, status: HealthStatus, message: str = "") -> RecoveryLevel:
    """Starting recovery level for one component."""
    text = message.lower()
    critical = status is HealthStatus.CRITICAL

    if component.startswith("network."):
        if "connectivity" in text and "container" in text:
            return RecoveryLevel.CONTAINER
        return RecoveryLevel.INTERFACE

    if component.startswith("system."):
        if component.endswith(".container") or "container" in text:
            return RecoveryLevel.CONTAINER
        if component.endswith(".service") or "service" in text:
            return RecoveryLevel.SERVICE
        if "docker" in text:
            return RecoveryLevel.SERVICE if critical else RecoveryLevel.CONTAINER

    return RecoveryLevel.CONTAINER if critical else RecoveryLevel.INTERFACE


@dataclass
class RecoveryCycleResult:
    components: list[str] = field(default_factory=list)
    levels_attempted: list[RecoveryLevel] = field(default_factory=list)
    levels_skipped: list[RecoveryLevel] = field(default_factory=list)
    final_level: RecoveryLevel = RecoveryLevel.NONE
    success: bool = False
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "components": self.components,
            "levels_attempted": [level.label for level in self.levels_attempted],
            "levels_skipped": [level.label for level in self.levels_skipped],
            "final_level": self.final_level.label,
            "success": self.success,
            "skipped": self.skipped,
        }


class RecoveryOrchestrator:
    """Maps unhealthy components to recovery actions and verifies them."""

    def __init__(
        self,
        monitor: HealthMonitor,
        state: RecoveryState,
        actions: RecoveryActions,
        prober: Optional[ConnectivityProber] = None,
        reconciler: Optional["NetworkReconciler"] = None,
        check_interval: int = 300,
        verify_retries: int = 3,
        verify_initial_wait: float = 15,
        verify_backoff_step: float = 5,
        level_delays: Optional[dict[RecoveryLevel, float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.monitor = monitor
        self.registry = monitor.registry
        self.state = state
        self.actions = actions
        self.prober = prober
        self.reconciler = reconciler
        self.check_interval = check_interval
        self.verify_retries = max(1, verify_retries)
        self.verify_initial_wait = verify_initial_wait
        self.verify_backoff_step = verify_backoff_step
        self.level_delays = dict(LEVEL_DELAYS) if level_delays is None else level_delays
        self._sleep = sleep
        self._clock = clock
        self._last_cycle = 0.0
        self.current_level = RecoveryLevel.NONE
        self.last_result: Optional[RecoveryCycleResult] = None

    # ---- Public API ----

    async def run_recovery_cycle(self, force: bool = False) -> RecoveryCycleResult:
        """Evaluate system health and escalate recovery if needed."""
        now = self._clock()
        if not force and now - self._last_cycle < self.check_interval:
            logger.debug("Recovery cycle skipped: within check interval")
            return RecoveryCycleResult(skipped=True)
        self._last_cycle = now

        system = self.registry.system_status()
        if system not in (HealthStatus.CRITICAL, HealthStatus.DEGRADED):
            logger.debug(f"System status {system.value}, no recovery needed")
            result = RecoveryCycleResult(success=True)
            self.last_result = result
            return result

        components = self.registry.components_with(HealthStatus.CRITICAL)
        if not components:
            components = self.registry.components_with(HealthStatus.DEGRADED)
        logger.warning(f"System status {system.value}, starting recovery for: {', '.join(components)}")

        result = await self._escalate(components, RecoveryLevel.INTERFACE)
        self.last_result = result
        return result

    async def recover_component(self, component: str) -> RecoveryCycleResult:
        """Recover one component, starting at the level its status maps to."""
        status = self.registry.get_status(component)
        if status.status is HealthStatus.HEALTHY:
            return RecoveryCycleResult(components=[component], success=True)
        level = map_component_to_level(component, status.status, status.message)
        logger.info(f"Recovering {component} ({status.status.value}) starting at {level.label} level")
        result = await self._escalate([component], level)
        self.last_result = result
        return result

    # ---- State machine ----

    async def _escalate(self, components: list[str], level: RecoveryLevel) -> RecoveryCycleResult:
        result = RecoveryCycleResult(components=list(components))
        subject = ",".join(components) or "general"
        transitions = 0

        while level is not RecoveryLevel.NONE and transitions <= MAX_TRANSITIONS:
            self.current_level = level
            if not self.state.is_allowed(level):
                result.levels_skipped.append(level)
                level = level.next()
                transitions += 1
                continue

            executed = await self._execute(level)
            self.state.mark_action(level)
            self.state.record_attempt(subject, level, RecoveryOutcome.ATTEMPTED)
            result.levels_attempted.append(level)

            if executed:
                await self._sleep(self.level_delays.get(level, 0))
                if await self.verify(components, level):
                    self.state.record_attempt(subject, level, RecoveryOutcome.SUCCESS)
                    self.current_level = RecoveryLevel.NONE
                    result.final_level = level
                    result.success = True
                    await self._check_dependents(components)
                    return result
                message = "verification failed"
            else:
                message = "action failed"

            self.state.record_attempt(subject, level, RecoveryOutcome.FAILURE, message)
            level = level.next()
            transitions += 1

        self.current_level = RecoveryLevel.NONE
        logger.error(f"Recovery exhausted for {subject}; waiting for next scheduled cycle")
        return result

    async def _execute(self, level: RecoveryLevel) -> bool:
        action = {
            RecoveryLevel.INTERFACE: self.actions.interface_reset,
            RecoveryLevel.CONTAINER: self.actions.container_restart,
            RecoveryLevel.SERVICE: self.actions.service_restart,
        }[level]
        logger.info(f"Executing {level.label} recovery")
        try:
            return await action()
        except Exception:
            logger.exception(f"{level.label.capitalize()} recovery action raised")
            return False

    async def verify(self, components: list[str], level: RecoveryLevel) -> bool:
        """Re-check ``components`` with increasing backoff until they pass."""
        accepted = {HealthStatus.HEALTHY}
        if level is RecoveryLevel.INTERFACE:
            accepted.add(HealthStatus.DEGRADED)

        for attempt in range(self.verify_retries):
            await self._sleep(self.verify_initial_wait + attempt * self.verify_backoff_step)
            if CONNECTIVITY_COMPONENT in components:
                await self._refresh_connectivity()

            failing = []
            for component in components:
                status = await self.monitor.check_component(component, force=True)
                if status.status not in accepted:
                    failing.append(f"{component}={status.status.value}")
            if not failing:
                logger.info(f"Recovery at {level.label} level verified for {', '.join(components)}")
                return True
            logger.info(
                f"Recovery not yet verified ({', '.join(failing)}), "
                f"attempt {attempt + 1}/{self.verify_retries}"
            )
        return False

    async def _refresh_connectivity(self) -> None:
        if self.prober is None or self.reconciler is None:
            return
        try:
            subnets = await self.reconciler.remote_subnets()
        except StoreError as e:
            logger.warning(f"Cannot list remote subnets for connectivity re-test: {e}")
            return
        await self.prober.run_connectivity_tests(subnets, force=True)

    async def _check_dependents(self, components: list[str]) -> None:
        for component in components:
            for dependent in DEPENDENCIES.get(component, []):
                status = await self.monitor.check_component(dependent, force=True)
                logger.info(f"Dependent {dependent} of {component} is {status.status.value}")
