from __future__ import annotations

import json

from overlay_agent.models import RecoveryLevel, RecoveryOutcome
from overlay_agent.recovery.state import LevelPolicy, RecoveryState


def _state(tmp_path, clock, **kwargs) -> RecoveryState:
    return RecoveryState(tmp_path / "recovery_state.json", clock=clock, **kwargs)


def test_none_level_is_never_allowed(tmp_path, clock):
    assert _state(tmp_path, clock).is_allowed(RecoveryLevel.NONE) is False


def test_cooldown_blocks_until_elapsed(tmp_path, clock):
    state = _state(tmp_path, clock)
    state.mark_action(RecoveryLevel.CONTAINER)

    clock.advance(899)
    assert state.is_allowed(RecoveryLevel.CONTAINER) is False
    clock.advance(2)
    assert state.is_allowed(RecoveryLevel.CONTAINER) is True
    # other levels keep their own windows
    assert state.is_allowed(RecoveryLevel.INTERFACE) is True


def test_attempt_cap_over_trailing_day(tmp_path, clock):
    state = _state(tmp_path, clock)
    for _ in range(3):
        state.record_attempt("network.interface", RecoveryLevel.INTERFACE, RecoveryOutcome.ATTEMPTED)
        state.record_attempt("network.interface", RecoveryLevel.INTERFACE, RecoveryOutcome.FAILURE)

    assert state.attempts_in_window(RecoveryLevel.INTERFACE, 86400) == 3
    assert state.is_allowed(RecoveryLevel.INTERFACE) is False

    clock.advance(86401)
    assert state.is_allowed(RecoveryLevel.INTERFACE) is True


def test_success_records_last_success(tmp_path, clock):
    state = _state(tmp_path, clock)
    assert state.last_success(RecoveryLevel.SERVICE) is None

    state.record_attempt("system.docker", RecoveryLevel.SERVICE, RecoveryOutcome.SUCCESS)

    assert state.last_success(RecoveryLevel.SERVICE) == clock.now


def test_state_is_shared_through_the_file(tmp_path, clock):
    first = _state(tmp_path, clock)
    first.mark_action(RecoveryLevel.SERVICE)
    first.record_attempt("system.docker", RecoveryLevel.SERVICE, RecoveryOutcome.ATTEMPTED, "restart docker")

    second = _state(tmp_path, clock)

    assert second.last_action(RecoveryLevel.SERVICE) == clock.now
    assert second.is_allowed(RecoveryLevel.SERVICE) is False
    assert [a.message for a in second.history("system.docker")] == ["restart docker"]
    data = json.loads((tmp_path / "recovery_state.json").read_text())
    assert data["cooldowns"] == {"recovery_service": clock.now}


def test_history_retention_drops_old_entries(tmp_path, clock):
    state = _state(tmp_path, clock, history_retention=3600)
    state.record_attempt("network.fdb", RecoveryLevel.INTERFACE, RecoveryOutcome.ATTEMPTED)
    clock.advance(7200)
    state.record_attempt("network.routes", RecoveryLevel.INTERFACE, RecoveryOutcome.ATTEMPTED)

    assert [a.component for a in state.history()] == ["network.routes"]


def test_custom_policies_override_defaults(tmp_path, clock):
    state = _state(tmp_path, clock, policies={RecoveryLevel.SERVICE: LevelPolicy(cooldown=0, max_attempts=2)})
    state.record_attempt("system.docker", RecoveryLevel.SERVICE, RecoveryOutcome.ATTEMPTED)

    assert state.is_allowed(RecoveryLevel.SERVICE) is True
    assert state.policies[RecoveryLevel.CONTAINER].cooldown == 900


def test_corrupt_history_entries_are_ignored(tmp_path, clock):
    (tmp_path / "recovery_state.json").write_text(
        json.dumps(
            {
                "cooldowns": {},
                "history": [
                    {"component": "x", "level": "bogus", "outcome": "attempted", "timestamp": 1},
                    {"component": "y", "level": "container", "outcome": "attempted", "timestamp": clock.now},
                ],
            }
        )
    )

    assert [a.component for a in _state(tmp_path, clock).history()] == ["y"]
