from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from docker.errors import DockerException

from overlay_agent.containers import ContainerState
from overlay_agent.reconciler import ReconcileResult
from overlay_agent.recovery import actions as actions_mod
from overlay_agent.recovery.actions import HostRecoveryActions, NoopRecoveryActions, running_in_container


class FakeRuntime:
    def __init__(self, container=None, states=(), pings=(True,), counts=(3, 3)):
        self.container = container
        self.states = list(states)
        self.pings = list(pings)
        self.counts = list(counts)
        self.restarted: list[str] = []
        self.resets = 0

    async def find_container(self, name, images):
        return self.container

    async def restart(self, name_or_id, timeout=10):
        self.restarted.append(name_or_id)

    async def inspect(self, name_or_id):
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        if isinstance(state, Exception):
            raise state
        return state

    async def ping(self):
        return self.pings.pop(0) if len(self.pings) > 1 else self.pings[0]

    async def running_count(self):
        return self.counts.pop(0) if len(self.counts) > 1 else self.counts[0]

    def reset_client(self):
        self.resets += 1


class FakeReconciler:
    def __init__(self):
        self.forced = 0

    async def reconcile(self, force=False):
        self.forced += int(force)
        return ReconcileResult()


def _actions(clock, kernel=None, runtime=None, reconciler=None, in_container=False):
    async def _sleep(delay):
        clock.advance(delay)

    return HostRecoveryActions(
        kernel,
        runtime or FakeRuntime(),
        reconciler,
        device="flannel.1",
        mtu=1370,
        container_name="flannel",
        container_images=["quay.io/coreos/flannel"],
        container_timeout=30,
        docker_timeout=60,
        in_container=in_container,
        sleep=_sleep,
        clock=clock,
    )


def _state(status="running", restarts=0, age=3600):
    started = datetime.now(timezone.utc) - timedelta(seconds=age)
    return ContainerState("flannel", "0123456789abcdef", status, restart_count=restarts, started_at=started)


@pytest.mark.asyncio
async def test_interface_reset_bounces_link_and_reconciles(clock, kernel) -> None:
    kernel.link.mtu = 1450
    reconciler = FakeReconciler()

    assert await _actions(clock, kernel, reconciler=reconciler).interface_reset() is True

    assert kernel.calls == [("set_link", False), ("set_link", True), ("set_mtu", 1370)]
    assert kernel.link.mtu == 1370
    assert reconciler.forced == 1


@pytest.mark.asyncio
async def test_interface_reset_reports_kernel_failure(clock, kernel) -> None:
    kernel.fail_link = True
    reconciler = FakeReconciler()

    assert await _actions(clock, kernel, reconciler=reconciler).interface_reset() is False
    assert reconciler.forced == 0


@pytest.mark.asyncio
async def test_container_restart_waits_for_stable_state(clock, kernel) -> None:
    runtime = FakeRuntime(container=_state(), states=[_state("restarting"), _state(age=5, restarts=1)])

    assert await _actions(clock, kernel, runtime).container_restart() is True
    assert runtime.restarted == ["0123456789abcdef"]


@pytest.mark.asyncio
async def test_container_restart_times_out_when_flapping(clock, kernel) -> None:
    runtime = FakeRuntime(container=_state(), states=[DockerException("gone"), _state(age=5, restarts=6)])

    assert await _actions(clock, kernel, runtime).container_restart() is False


@pytest.mark.asyncio
async def test_container_restart_without_container(clock, kernel) -> None:
    runtime = FakeRuntime(container=None)

    assert await _actions(clock, kernel, runtime).container_restart() is False
    assert runtime.restarted == []


@pytest.mark.asyncio
async def test_service_restart_uses_nsenter_inside_container(monkeypatch, clock, kernel) -> None:
    calls = []

    async def _fake_run_cmd(cmd, timeout=30):
        calls.append(cmd)
        return 0, "", ""

    monkeypatch.setattr(actions_mod, "run_cmd", _fake_run_cmd)
    runtime = FakeRuntime(pings=[False, True])

    assert await _actions(clock, kernel, runtime, in_container=True).service_restart() is True
    assert calls == [["nsenter", "-t", "1", "-m", "-u", "-n", "-i", "systemctl", "restart", "docker"]]
    assert runtime.resets == 1


@pytest.mark.asyncio
async def test_service_restart_fails_when_runtime_stays_down(monkeypatch, clock, kernel) -> None:
    async def _fake_run_cmd(cmd, timeout=30):
        return 0, "", ""

    monkeypatch.setattr(actions_mod, "run_cmd", _fake_run_cmd)

    assert await _actions(clock, kernel, FakeRuntime(pings=[False])).service_restart() is False


@pytest.mark.asyncio
async def test_service_restart_command_failure(monkeypatch, clock, kernel) -> None:
    async def _fake_run_cmd(cmd, timeout=30):
        return 1, "", "Failed to restart docker.service: Access denied"

    monkeypatch.setattr(actions_mod, "run_cmd", _fake_run_cmd)

    assert await _actions(clock, kernel).service_restart() is False


@pytest.mark.asyncio
async def test_noop_actions_never_act() -> None:
    noop = NoopRecoveryActions()
    assert await noop.interface_reset() is False
    assert await noop.container_restart() is False
    assert await noop.service_restart() is False


def test_running_in_container(tmp_path):
    assert running_in_container(str(tmp_path)) is False

    (tmp_path / "proc" / "1").mkdir(parents=True)
    (tmp_path / "proc" / "1" / "cgroup").write_text("0::/system.slice/containerd.service\n")
    assert running_in_container(str(tmp_path)) is True
