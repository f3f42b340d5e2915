"""Component health registry.

Process-wide map from component name (``network.fdb``, ``system.docker``...)
to its last reported status, mirrored to a JSON file so status and history
survive restarts.

Status changes fire exactly one transition event to registered observers:

- ``critical``: the new status is Critical (from anything)
- ``recovery``: a non-Healthy status became Healthy
- ``degraded``: Healthy became Degraded or Unknown

Observer failures are logged and never propagate to the checker that
reported the status.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from overlay_agent import metrics
from overlay_agent.models import ComponentStatus, HealthStatus, aggregate_status
from overlay_agent.persistence import load_json, save_json

logger = logging.getLogger(__name__)

MAX_HISTORY = 500


@dataclass(frozen=True)
class HealthTransition:
    """Payload delivered to observers on a status change."""

    component: str
    previous: HealthStatus
    current: HealthStatus
    message: str
    timestamp: float

    @property
    def event(self) -> Optional[str]:
        if self.current is HealthStatus.CRITICAL:
            return "critical"
        if self.current is HealthStatus.HEALTHY and self.previous is not HealthStatus.HEALTHY:
            return "recovery"
        if self.previous is HealthStatus.HEALTHY:
            return "degraded"
        return None

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "previous": self.previous.value,
            "current": self.current.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class HealthObserver:
    """Receives health transitions. Override the events of interest."""

    def on_degraded(self, transition: HealthTransition) -> None:
        pass

    def on_recovery(self, transition: HealthTransition) -> None:
        pass

    def on_critical(self, transition: HealthTransition) -> None:
        pass


class LoggingObserver(HealthObserver):
    def on_degraded(self, transition: HealthTransition) -> None:
        logger.warning(
            f"Component {transition.component} degraded: "
            f"{transition.previous.value} -> {transition.current.value} ({transition.message})"
        )

    def on_recovery(self, transition: HealthTransition) -> None:
        logger.info(f"Component {transition.component} recovered ({transition.message})")

    def on_critical(self, transition: HealthTransition) -> None:
        logger.error(f"Component {transition.component} is CRITICAL: {transition.message}")


class HealthRegistry:
    """In-memory component status map with optional disk mirror."""

    def __init__(
        self,
        persistence_path: Optional[Path] = None,
        enabled_components: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._path = Path(persistence_path) if persistence_path else None
        self._enabled = set(enabled_components) if enabled_components else None
        self._clock = clock
        self._statuses: dict[str, ComponentStatus] = {}
        self._history: list[HealthTransition] = []
        self._observers: list[HealthObserver] = []
        self._load_from_disk()

    # ---- Observers ----

    def add_observer(self, observer: HealthObserver) -> None:
        self._observers.append(observer)

    def _notify(self, transition: HealthTransition) -> None:
        event = transition.event
        if event is None:
            return
        for observer in list(self._observers):
            handler = getattr(observer, f"on_{event}")
            try:
                handler(transition)
            except Exception:
                logger.exception(f"Health observer {type(observer).__name__} failed handling {event} for {transition.component}")

    # ---- Updates ----

    def is_enabled(self, component: str) -> bool:
        return self._enabled is None or component in self._enabled

    def update_status(self, component: str, status: HealthStatus, message: str = "") -> bool:
        """Store ``status`` for ``component``. Returns True if it changed."""
        if not self.is_enabled(component):
            return False
        now = self._clock()
        current = self._statuses.get(component)
        previous = current.status if current else HealthStatus.UNKNOWN
        changed = current is None or current.status is not status

        self._statuses[component] = ComponentStatus(component, status, message, now)
        metrics.component_status.labels(component=component).set(status.severity)
        if changed:
            transition = HealthTransition(component, previous, status, message, now)
            self._history.append(transition)
            if len(self._history) > MAX_HISTORY:
                del self._history[: len(self._history) - MAX_HISTORY]
            logger.debug(f"Component {component}: {previous.value} -> {status.value} ({message})")
            self._notify(transition)
        self._save_to_disk()
        return changed

    def retain(self, components: Iterable[str]) -> list[str]:
        """Forget every component not in ``components``. Returns the dropped names."""
        keep = set(components)
        dropped = sorted(name for name in self._statuses if name not in keep)
        if dropped:
            for name in dropped:
                del self._statuses[name]
            logger.info(f"Dropped status for unchecked components: {', '.join(dropped)}")
            self._save_to_disk()
        return dropped

    # ---- Reads ----

    def get_status(self, component: str) -> ComponentStatus:
        return self._statuses.get(component) or ComponentStatus(component, HealthStatus.UNKNOWN, "", 0)

    def get_all(self) -> dict[str, ComponentStatus]:
        return dict(self._statuses)

    def system_status(self) -> HealthStatus:
        return aggregate_status(s.status for s in self._statuses.values())

    def components_with(self, status: HealthStatus) -> list[str]:
        return sorted(name for name, s in self._statuses.items() if s.status is status)

    def is_stale(self, component: str, max_age: float) -> bool:
        current = self._statuses.get(component)
        return current is None or self._clock() - current.timestamp > max_age

    def history(self, component: Optional[str] = None) -> list[HealthTransition]:
        if component is None:
            return list(self._history)
        return [t for t in self._history if t.component == component]

    # ---- Persistence ----

    def _load_from_disk(self) -> None:
        if self._path is None:
            return
        data = load_json(self._path, {}) or {}
        for item in data.get("components", []):
            try:
                status = ComponentStatus.from_dict(item)
            except (KeyError, ValueError) as e:
                logger.warning(f"Ignoring invalid persisted component status: {e}")
                continue
            if not self.is_enabled(status.component):
                logger.info(f"Dropping persisted status for disabled component {status.component}")
                continue
            self._statuses[status.component] = status
        for item in data.get("history", []):
            try:
                self._history.append(
                    HealthTransition(
                        component=item["component"],
                        previous=HealthStatus(item["previous"]),
                        current=HealthStatus(item["current"]),
                        message=item.get("message", ""),
                        timestamp=float(item["timestamp"]),
                    )
                )
            except (KeyError, ValueError):
                continue
        if self._statuses:
            logger.info(f"Loaded {len(self._statuses)} component statuses from disk")

    def _save_to_disk(self) -> None:
        if self._path is None:
            return
        save_json(
            self._path,
            {
                "components": [s.to_dict() for s in self._statuses.values()],
                "history": [t.to_dict() for t in self._history],
            },
        )
