"""Core domain types shared by the reconciler, health and recovery layers."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Iterable, Optional


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def is_healthy(self) -> bool:
        return self is HealthStatus.HEALTHY


_SEVERITY = {
    HealthStatus.UNKNOWN: 0,
    HealthStatus.HEALTHY: 1,
    HealthStatus.DEGRADED: 2,
    HealthStatus.CRITICAL: 3,
}


@dataclass
class ComponentStatus:
    """Last known status of one monitored component."""

    component: str
    status: HealthStatus = HealthStatus.UNKNOWN
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ComponentStatus":
        return cls(
            component=data["component"],
            status=HealthStatus(data.get("status", "unknown")),
            message=data.get("message", ""),
            timestamp=float(data.get("timestamp", 0)),
        )


def aggregate_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Fold component statuses into one system status.

    Critical if any is Critical, else Degraded if any is Degraded, else
    Healthy if all are Healthy, else Unknown. Empty input is Unknown.
    """
    present = set(statuses)
    if not present:
        return HealthStatus.UNKNOWN
    if HealthStatus.CRITICAL in present:
        return HealthStatus.CRITICAL
    if HealthStatus.DEGRADED in present:
        return HealthStatus.DEGRADED
    if present == {HealthStatus.HEALTHY}:
        return HealthStatus.HEALTHY
    return HealthStatus.UNKNOWN


class RecoveryLevel(IntEnum):
    """Recovery actions ordered by disruptiveness."""

    NONE = 0
    INTERFACE = 1
    CONTAINER = 2
    SERVICE = 3

    def next(self) -> "RecoveryLevel":
        if self is RecoveryLevel.SERVICE or self is RecoveryLevel.NONE:
            return RecoveryLevel.NONE
        return RecoveryLevel(self + 1)

    @property
    def label(self) -> str:
        return self.name.lower()

    @property
    def action(self) -> str:
        return f"recovery_{self.label}"

    @classmethod
    def from_label(cls, label: str) -> "RecoveryLevel":
        return cls[label.upper()]


class RecoveryOutcome(str, Enum):
    ATTEMPTED = "attempted"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class RecoveryAttempt:
    component: str
    level: RecoveryLevel
    outcome: RecoveryOutcome
    timestamp: float
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "level": self.level.label,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryAttempt":
        return cls(
            component=data.get("component", "general"),
            level=RecoveryLevel.from_label(data["level"]),
            outcome=RecoveryOutcome(data["outcome"]),
            timestamp=float(data["timestamp"]),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class FDBEntry:
    """Forwarding entry on the overlay device: endpoint MAC -> underlay destination."""

    mac: str
    dst: Optional[str] = None
    local: bool = False  # device-owned entry (no dst), never reconciled

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RouteEntry:
    cidr: str
    gateway: Optional[str] = None
    device: Optional[str] = None
    onlink: bool = False

    def to_dict(self) -> dict:
        return asdict(self)
