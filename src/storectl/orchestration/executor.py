"""Real and simulated execution of host-mutating steps.

Orchestrators route every action that changes the host (service control,
site files, package downloads, database commands, file copies) through a
:class:`StepExecutor`. The real executor performs the action; the simulated
executor records what would have happened and hands back a stand-in value, so
both modes walk exactly the same state machine. Read-only lookups (the
instance registry, release metadata) run for real in either mode.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from ..progress import StepId

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutionMode(str, Enum):
    """How an orchestration run treats the host."""

    REAL = "real"
    SIMULATED = "simulated"


@dataclass(frozen=True, slots=True)
class SimulatedAction:
    """An action the simulated executor skipped."""

    step: StepId
    description: str


class StepExecutor:
    """Base executor; subclasses decide whether actions really run."""

    mode: ExecutionMode = ExecutionMode.REAL

    def run(self, step: StepId, description: str, action: Callable[[], T], *, simulated: T) -> T:
        """Perform *action* for *step*, or stand in for it with *simulated*."""
        raise NotImplementedError

    @property
    def simulated(self) -> bool:
        """Return ``True`` when actions are only recorded."""
        return self.mode is ExecutionMode.SIMULATED


class RealStepExecutor(StepExecutor):
    """Run every action against the host."""

    mode = ExecutionMode.REAL

    def run(self, step: StepId, description: str, action: Callable[[], T], *, simulated: T) -> T:
        """Call *action* and return its result."""
        LOGGER.debug("%s: %s", step.value, description)
        return action()


@dataclass
class SimulatedStepExecutor(StepExecutor):
    """Record actions without touching the host."""

    actions: list[SimulatedAction] = field(default_factory=list)
    mode = ExecutionMode.SIMULATED

    def run(self, step: StepId, description: str, action: Callable[[], T], *, simulated: T) -> T:
        """Record *description* and return *simulated*."""
        LOGGER.info("[simulated] %s: %s", step.value, description)
        self.actions.append(SimulatedAction(step=step, description=description))
        return simulated


def executor_for(mode: ExecutionMode) -> StepExecutor:
    """Return a fresh executor for *mode*."""
    if mode is ExecutionMode.SIMULATED:
        return SimulatedStepExecutor()
    return RealStepExecutor()


__all__ = [
    "ExecutionMode",
    "RealStepExecutor",
    "SimulatedAction",
    "SimulatedStepExecutor",
    "StepExecutor",
    "executor_for",
]
