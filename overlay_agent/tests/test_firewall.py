from __future__ import annotations

import asyncio

import pytest

from overlay_agent.errors import KernelCommandError
from overlay_agent.network.firewall import IptablesFirewall, NoopFirewall


class _FakeProc:
    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self._stderr = stderr
        self.returncode = returncode

    async def communicate(self) -> tuple[bytes, bytes]:
        return b"", self._stderr.encode()


class FakeIptables:
    """Tracks chains and rules the way iptables -L/-N/-C/-A would."""

    def __init__(self, chains=(), rules=(), fail_append=False):
        self.chains = set(chains)
        self.rules = set(rules)
        self.fail_append = fail_append
        self.calls: list[tuple] = []

    async def __call__(self, *args, **kwargs):
        assert args[:2] == ("iptables", "-w")
        self.calls.append(args[2:])
        op, rest = args[2], args[3:]
        if op == "-n":
            return _FakeProc(0 if rest[1] in self.chains else 1)
        if op == "-N":
            self.chains.add(rest[0])
            return _FakeProc()
        if op == "-C":
            return _FakeProc(0 if rest in self.rules else 1, "Bad rule")
        if op == "-A":
            if self.fail_append:
                return _FakeProc(4, "iptables: Permission denied")
            self.rules.add(rest)
            return _FakeProc()
        return _FakeProc(2, "unexpected")

    def ops(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.mark.asyncio
async def test_creates_chain_rules_and_jump(monkeypatch) -> None:
    iptables = FakeIptables()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", iptables)

    added = await IptablesFirewall(chain="FLANNEL-FWD").ensure_forward_accept("10.5.0.0/16")

    assert added == 3
    assert "FLANNEL-FWD" in iptables.chains
    assert ("FORWARD", "-j", "FLANNEL-FWD") in iptables.rules
    sources = {rule[1:3] for rule in iptables.rules if rule[0] == "FLANNEL-FWD"}
    assert sources == {("-s", "10.5.0.0/16"), ("-d", "10.5.0.0/16")}


@pytest.mark.asyncio
async def test_existing_rules_are_left_alone(monkeypatch) -> None:
    iptables = FakeIptables()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", iptables)
    firewall = IptablesFirewall()
    await firewall.ensure_forward_accept("10.5.0.0/16")
    iptables.calls.clear()

    assert await firewall.ensure_forward_accept("10.5.0.0/16") == 0
    assert "-A" not in iptables.ops()
    assert "-N" not in iptables.ops()


@pytest.mark.asyncio
async def test_append_failure_raises(monkeypatch) -> None:
    monkeypatch.setattr(asyncio, "create_subprocess_exec", FakeIptables(chains=["FLANNEL-FWD"], fail_append=True))

    with pytest.raises(KernelCommandError, match="Permission denied"):
        await IptablesFirewall().ensure_forward_accept("10.5.0.0/16")


@pytest.mark.asyncio
async def test_noop_firewall() -> None:
    assert await NoopFirewall().ensure_forward_accept("10.5.0.0/16") == 0
