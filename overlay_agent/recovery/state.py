"""Persisted recovery bookkeeping: cooldowns, last successes and history.

The JSON file is the source of truth for rate limiting, so that a restarted
agent does not immediately repeat a disruptive action it took moments
before the restart.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from overlay_agent import metrics
from overlay_agent.models import RecoveryAttempt, RecoveryLevel, RecoveryOutcome
from overlay_agent.persistence import load_json, save_json

logger = logging.getLogger(__name__)

ATTEMPT_WINDOW = 86400  # trailing 24h for attempt caps


@dataclass(frozen=True)
class LevelPolicy:
    cooldown: int
    max_attempts: int


DEFAULT_POLICIES = {
    RecoveryLevel.INTERFACE: LevelPolicy(cooldown=0, max_attempts=3),
    RecoveryLevel.CONTAINER: LevelPolicy(cooldown=900, max_attempts=2),
    RecoveryLevel.SERVICE: LevelPolicy(cooldown=43200, max_attempts=1),
}


class RecoveryState:
    """Cooldown and attempt-cap gate backed by a JSON state file."""

    def __init__(
        self,
        path: Path,
        policies: Optional[dict[RecoveryLevel, LevelPolicy]] = None,
        history_retention: int = 2592000,
        clock: Callable[[], float] = time.time,
    ):
        self._path = Path(path)
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.history_retention = history_retention
        self._clock = clock
        self._cooldowns: dict[str, float] = {}
        self._last_success: dict[str, float] = {}
        self._history: list[RecoveryAttempt] = []
        self._load_from_disk()

    # ---- Gate ----

    def is_allowed(self, level: RecoveryLevel, now: Optional[float] = None) -> bool:
        """Whether the level's action may run now.

        Refused inside the level's cooldown window, or once the number of
        attempts in the trailing 24 hours has reached the level's cap.
        """
        if level is RecoveryLevel.NONE:
            return False
        self._load_from_disk()
        now = self._clock() if now is None else now
        policy = self.policies[level]

        last = self._cooldowns.get(level.action)
        if last is not None and now - last < policy.cooldown:
            logger.info(
                f"Recovery level {level.label} in cooldown ({int(policy.cooldown - (now - last))}s remaining)"
            )
            return False

        attempts = self.attempts_in_window(level, ATTEMPT_WINDOW, now)
        if attempts >= policy.max_attempts:
            logger.info(
                f"Recovery level {level.label} reached attempt cap ({attempts}/{policy.max_attempts} in 24h)"
            )
            return False
        return True

    def attempts_in_window(self, level: RecoveryLevel, window: float, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        cutoff = now - window
        return sum(
            1
            for a in self._history
            if a.level is level and a.outcome is RecoveryOutcome.ATTEMPTED and a.timestamp >= cutoff
        )

    # ---- Recording ----

    def mark_action(self, level: RecoveryLevel) -> None:
        """Start the level's cooldown window from now."""
        self._cooldowns[level.action] = self._clock()
        self._save_to_disk()

    def record_attempt(
        self,
        component: str,
        level: RecoveryLevel,
        outcome: RecoveryOutcome,
        message: str = "",
    ) -> RecoveryAttempt:
        now = self._clock()
        attempt = RecoveryAttempt(component, level, outcome, now, message)
        self._history.append(attempt)
        if outcome is RecoveryOutcome.SUCCESS:
            self._last_success[level.action] = now
        cutoff = now - self.history_retention
        self._history = [a for a in self._history if a.timestamp >= cutoff]
        self._save_to_disk()
        metrics.recovery_attempts.labels(level=level.label, outcome=outcome.value).inc()
        logger.info(f"Recovery {level.label} for {component}: {outcome.value} {message}".rstrip())
        return attempt

    # ---- Reads ----

    def last_success(self, level: RecoveryLevel) -> Optional[float]:
        return self._last_success.get(level.action)

    def last_action(self, level: RecoveryLevel) -> Optional[float]:
        return self._cooldowns.get(level.action)

    def history(self, component: Optional[str] = None) -> list[RecoveryAttempt]:
        if component is None:
            return list(self._history)
        return [a for a in self._history if a.component == component]

    # ---- Persistence ----

    def _load_from_disk(self) -> None:
        data = load_json(self._path)
        if not isinstance(data, dict):
            return
        self._cooldowns = {k: float(v) for k, v in (data.get("cooldowns") or {}).items()}
        self._last_success = {k: float(v) for k, v in (data.get("last_success") or {}).items()}
        history = []
        for item in data.get("history") or []:
            try:
                history.append(RecoveryAttempt.from_dict(item))
            except (KeyError, ValueError) as e:
                logger.warning(f"Ignoring invalid recovery history entry: {e}")
        self._history = history

    def _save_to_disk(self) -> None:
        save_json(
            self._path,
            {
                "cooldowns": self._cooldowns,
                "last_success": self._last_success,
                "history": [a.to_dict() for a in self._history],
            },
        )
