"""Exception hierarchy for the overlay agent."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent errors."""


class ConfigurationError(AgentError):
    """Local misconfiguration that prevents the agent loop from starting."""


class StoreError(AgentError):
    """Coordination store request failed."""


class StoreUnavailableError(StoreError):
    """Coordination store could not be reached within the retry budget."""


class RecordError(AgentError):
    """A coordination store record is malformed or incomplete."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class KernelCommandError(AgentError):
    """A kernel table mutation (ip, bridge or iptables) exited non-zero."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        super().__init__(f"{' '.join(cmd)} failed ({returncode}): {stderr.strip()}")
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
