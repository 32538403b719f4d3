"""Runtime state probe for the managed stack."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class StackState(Enum):
    """Whether any service of the stack is running."""

    STOPPED = "stopped"
    RUNNING = "running"


class ServiceLister(Protocol):
    """Anything that can list running services (the compose provider)."""

    def ps(self) -> list[str]:
        """Return names of running services."""
        ...


@dataclass(slots=True)
class RuntimeStateProbe:
    """Derive :class:`StackState` from the orchestration engine on demand.

    ``ProbeError`` raised by the engine propagates unchanged; callers treat it
    as fatal.
    """

    engine: ServiceLister

    def snapshot(self) -> tuple[StackState, list[str]]:
        """Return the current stack state together with the running services."""
        services = self.engine.ps()
        state = StackState.RUNNING if services else StackState.STOPPED
        return state, services

    def state(self) -> StackState:
        """Return the current stack state."""
        return self.snapshot()[0]

    def is_running(self) -> bool:
        """Return True when at least one service is running."""
        return self.state() is StackState.RUNNING


__all__ = ["RuntimeStateProbe", "ServiceLister", "StackState"]
