"""Lifecycle orchestrators for storefront instances."""
from __future__ import annotations

from .base import OrchestrationContext, Orchestrator
from .executor import ExecutionMode, RealStepExecutor, SimulatedStepExecutor, StepExecutor, executor_for
from .install import InstallOrchestrator, InstallRequest, validate_site_name
from .repair import RepairOrchestrator
from .uninstall import UninstallOptions, UninstallOrchestrator
from .upgrade import UpgradeOrchestrator

__all__ = [
    "ExecutionMode",
    "InstallOrchestrator",
    "InstallRequest",
    "OrchestrationContext",
    "Orchestrator",
    "RealStepExecutor",
    "RepairOrchestrator",
    "SimulatedStepExecutor",
    "StepExecutor",
    "UninstallOptions",
    "UninstallOrchestrator",
    "UpgradeOrchestrator",
    "executor_for",
    "validate_site_name",
]
