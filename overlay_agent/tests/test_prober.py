from __future__ import annotations

import pytest

from overlay_agent.prober import (
    STATUS_DOWN,
    STATUS_INVALID,
    STATUS_UP,
    ConnectivityProber,
    representative_address,
)


class ScriptedProber(ConnectivityProber):
    """Prober whose ping/connect results come from a per-address script."""

    def __init__(self, results: dict[str, list[bool]], **kwargs):
        kwargs.setdefault("retry_delay", 0)
        super().__init__(**kwargs)
        self.results = results
        self.attempts: list[str] = []

    def _next(self, target: str) -> bool:
        self.attempts.append(target)
        script = self.results.get(target, [False])
        return script.pop(0) if len(script) > 1 else script[0]

    async def _ping_once(self, address: str) -> bool:
        return self._next(address)

    async def _connect_once(self, address: str, port: int) -> bool:
        return self._next(f"{address}:{port}")


def test_representative_address():
    assert representative_address("10.5.8.0/24") == "10.5.8.1"
    assert representative_address("10.5.8.7/32") == "10.5.8.7"


@pytest.mark.asyncio
async def test_probe_host_retries_until_success(clock) -> None:
    prober = ScriptedProber({"203.0.113.5": [False, False, True]}, clock=clock)

    assert await prober.probe_host("203.0.113.5") is True
    assert len(prober.attempts) == 3
    assert prober.last_status["203.0.113.5"].status == STATUS_UP


@pytest.mark.asyncio
async def test_probe_host_gives_up_after_retry_count(clock) -> None:
    prober = ScriptedProber({}, retry_count=2, clock=clock)

    assert await prober.probe_host("203.0.113.5") is False
    assert len(prober.attempts) == 2
    assert prober.last_status["203.0.113.5"].status == STATUS_DOWN


@pytest.mark.asyncio
async def test_invalid_targets_are_not_probed(clock) -> None:
    prober = ScriptedProber({}, clock=clock)

    assert await prober.probe_host("not-an-ip") is False
    assert await prober.probe_subnet("10.5.999.0/24") is False
    assert await prober.probe_service("203.0.113.5", 70000) is False

    assert prober.attempts == []
    assert prober.last_status["not-an-ip"].status == STATUS_INVALID
    assert prober.last_status["10.5.999.0/24"].status == STATUS_INVALID
    assert prober.last_status["203.0.113.5:70000"].status == STATUS_INVALID


@pytest.mark.asyncio
async def test_probe_subnet_targets_first_host(clock) -> None:
    prober = ScriptedProber({"10.5.8.1": [True]}, clock=clock)

    assert await prober.probe_subnet("10.5.8.0/24") is True
    assert prober.attempts == ["10.5.8.1"]
    assert prober.recent_status("10.5.8.0/24", 60) == STATUS_UP


@pytest.mark.asyncio
async def test_probe_service(clock) -> None:
    prober = ScriptedProber({"203.0.113.5:2379": [True]}, clock=clock)

    assert await prober.probe_service("203.0.113.5", 2379) is True
    assert prober.status_snapshot()["203.0.113.5:2379"]["status"] == STATUS_UP


@pytest.mark.asyncio
async def test_recent_status_expires(clock) -> None:
    prober = ScriptedProber({"10.5.8.1": [True]}, clock=clock)
    await prober.probe_subnet("10.5.8.0/24")

    clock.advance(120)
    assert prober.recent_status("10.5.8.0/24", 60) is None
    assert prober.recent_status("10.5.9.0/24", 60) is None


@pytest.mark.asyncio
async def test_connectivity_tests_are_gated_by_interval(clock, tmp_path) -> None:
    prober = ScriptedProber({"10.5.8.1": [True], "10.5.9.1": [False]}, retry_count=1, clock=clock, state_dir=tmp_path)

    results = await prober.run_connectivity_tests(["10.5.8.0/24", "10.5.9.0/24"])
    assert results == {"10.5.8.0/24": True, "10.5.9.0/24": False}

    clock.advance(10)
    assert await prober.run_connectivity_tests(["10.5.8.0/24"]) == {}
    assert await prober.run_connectivity_tests(["10.5.8.0/24"], force=True) == {"10.5.8.0/24": True}


@pytest.mark.asyncio
async def test_status_survives_restart(clock, tmp_path) -> None:
    prober = ScriptedProber({"10.5.8.1": [True]}, retry_count=1, clock=clock, state_dir=tmp_path)
    await prober.run_connectivity_tests(["10.5.8.0/24"])

    restarted = ConnectivityProber(state_dir=tmp_path, clock=clock)
    assert restarted.recent_status("10.5.8.0/24", 60) == STATUS_UP
