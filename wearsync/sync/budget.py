"""Execution budgets for sync runs.

A foreground run may take as long as it needs. A background run gets a
deadline; the orchestrator checks it before every provider query and pauses
cleanly once it runs out, leaving the session resumable.
"""

import time
from typing import Callable, Protocol, runtime_checkable

__all__ = ["ExecutionBudget", "UnlimitedBudget", "DeadlineBudget"]


@runtime_checkable
class ExecutionBudget(Protocol):
    """How much longer a sync run may keep going."""

    @property
    def constrained(self) -> bool: ...

    def has_remaining(self) -> bool: ...


class UnlimitedBudget:
    """Foreground budget: never runs out."""

    constrained = False

    def has_remaining(self) -> bool:
        return True

    def __repr__(self) -> str:
        return "UnlimitedBudget()"


class DeadlineBudget:
    """Background budget that expires a fixed number of seconds after creation."""

    constrained = True

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._deadline = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def has_remaining(self) -> bool:
        return self._clock() < self._deadline

    def __repr__(self) -> str:
        return f"DeadlineBudget(seconds={self.seconds}, remaining={self.remaining():.1f})"
