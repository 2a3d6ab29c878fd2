"""Tests for real and simulated step execution."""
from __future__ import annotations

from storectl.orchestration.executor import (
    ExecutionMode,
    RealStepExecutor,
    SimulatedStepExecutor,
    executor_for,
)
from storectl.progress import StepId


def test_real_executor_runs_action() -> None:
    calls: list[str] = []
    executor = executor_for(ExecutionMode.REAL)

    result = executor.run(StepId.STOP, "stop shop", lambda: calls.append("stop") or True, simulated=False)

    assert isinstance(executor, RealStepExecutor)
    assert result is True
    assert calls == ["stop"]
    assert executor.simulated is False


def test_simulated_executor_records_and_skips() -> None:
    calls: list[str] = []
    executor = executor_for(ExecutionMode.SIMULATED)

    result = executor.run(StepId.STOP, "stop shop", lambda: calls.append("stop") or True, simulated=False)

    assert isinstance(executor, SimulatedStepExecutor)
    assert result is False
    assert calls == []
    assert executor.simulated is True
    assert [(action.step, action.description) for action in executor.actions] == [(StepId.STOP, "stop shop")]


def test_executor_for_returns_fresh_instances() -> None:
    first = executor_for(ExecutionMode.SIMULATED)
    second = executor_for(ExecutionMode.SIMULATED)

    assert isinstance(first, SimulatedStepExecutor)
    assert isinstance(second, SimulatedStepExecutor)
    first.run(StepId.BACKUP, "backup", lambda: None, simulated=None)
    assert second.actions == []
