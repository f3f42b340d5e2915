"""Process-wide lazy singletons."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Generic, TypeVar

if TYPE_CHECKING:
    from overlay_agent.main import ConvergenceAgent

T = TypeVar("T")


class LazySingleton(Generic[T]):
    """Build an instance on first use from a factory function."""

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._instance: T | None = None

    def get(self) -> T:
        if self._instance is None:
            self._instance = self._factory()
        return self._instance

    def set(self, instance: T) -> None:
        self._instance = instance

    def reset(self) -> None:
        self._instance = None


def _build_agent() -> "ConvergenceAgent":
    from overlay_agent.config import settings
    from overlay_agent.main import build_default_agent

    return build_default_agent(settings)


_agent_singleton: LazySingleton["ConvergenceAgent"] = LazySingleton(_build_agent)


def get_agent() -> "ConvergenceAgent":
    """Return the process-wide agent, composing it from settings on first use."""
    return _agent_singleton.get()


def set_agent(agent: "ConvergenceAgent") -> None:
    _agent_singleton.set(agent)


def reset_agent() -> None:
    """Drop the agent singleton (mainly for testing)."""
    _agent_singleton.reset()
