"""Reconciliation of a working but suspect instance.

Repair checks five resources independently: application files, the nginx
site and app pool, the systemd service, the application configuration and
database reachability. Each step reports OK, FIXED or ERROR on its own; a
failing step never stops the ones after it. With ``check_only`` nothing is
changed and problems are reported as warnings.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..archive import copy_tree_files, iter_files
from ..locking import LockTimeoutError
from ..models import ErrorKind, InstanceRecord, RepairResult, StepOutcome, StepStatus
from ..progress import REPAIR_STEPS, ProgressReporter, StepId
from ..state import StateRegistryError
from .base import APP_CONFIG_NAME, APP_CONFIG_TEMPLATE, HOST_ERRORS, Orchestrator
from .executor import ExecutionMode, StepExecutor, executor_for

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _RepairRun:
    record: InstanceRecord
    executor: StepExecutor
    check_only: bool


class RepairOrchestrator(Orchestrator):
    """Verify and fix the host resources of one instance."""

    def repair(
        self,
        site_name: str,
        *,
        check_only: bool = False,
        mode: ExecutionMode = ExecutionMode.REAL,
        reporter: ProgressReporter | None = None,
    ) -> RepairResult:
        """Reconcile *site_name* and report every step's outcome."""
        reporter = reporter if reporter is not None else ProgressReporter(REPAIR_STEPS)
        result = RepairResult(success=False, message="")
        try:
            with self._locked(site_name):
                self._repair(site_name, check_only, executor_for(mode), reporter, result)
        except LockTimeoutError as exc:
            self._failed(result, reporter, StepId.DETECT, ErrorKind.LOCKED, f"Instance '{site_name}' is busy: {exc}")
        return result

    def _repair(
        self,
        site_name: str,
        check_only: bool,
        executor: StepExecutor,
        reporter: ProgressReporter,
        result: RepairResult,
    ) -> None:
        reporter.begin(StepId.DETECT, f"Looking up {site_name}")
        record = self.context.registry.get(site_name)
        if record is None:
            self._failed(result, reporter, StepId.DETECT, ErrorKind.DETECTION, f"Instance '{site_name}' not found.")
            return
        self._passed(result, reporter, StepId.DETECT, f"{site_name} is at version {record.version}", percent=10)

        run = _RepairRun(record=record, executor=executor, check_only=check_only)
        checks: tuple[tuple[StepId, Callable[[_RepairRun], tuple[StepStatus, str]]], ...] = (
            (StepId.REPAIR_FILES, self._repair_files),
            (StepId.REPAIR_SITE, self._repair_site),
            (StepId.REPAIR_SERVICE, self._repair_service),
            (StepId.REPAIR_CONFIG, self._repair_config),
            (StepId.REPAIR_DATABASE, self._repair_database),
        )
        for index, (step, check) in enumerate(checks, start=1):
            reporter.begin(step, f"Checking {step.value.removeprefix('repair_')}")
            try:
                status, detail = check(run)
            except HOST_ERRORS as exc:
                status, detail = StepStatus.ERROR, str(exc)
            result.steps.append(StepOutcome(step=step.value, status=status, detail=detail))
            percent = 10 + index * 18
            if status is StepStatus.ERROR:
                reporter.fail(step, detail)
            elif status is StepStatus.WARNING:
                reporter.warn(step, detail)
                reporter.complete(step, detail, percent=percent)
            else:
                reporter.complete(step, detail, percent=percent)

        self._finish(run, result)

    def _finish(self, run: _RepairRun, result: RepairResult) -> None:
        record = run.record
        problems = [
            f"{item.step}: {item.detail}"
            for item in result.steps
            if item.status in (StepStatus.ERROR, StepStatus.WARNING)
        ]
        errors = [item for item in result.steps if item.status is StepStatus.ERROR]
        fixed = [item for item in result.steps if item.status is StepStatus.FIXED]
        result.warnings.extend(problems)

        updated = record.copy()
        updated.issues = list(problems)
        updated.is_healthy = not problems
        if not run.check_only and updated.to_dict() != record.to_dict():
            try:
                run.executor.run(
                    StepId.REPAIR_DATABASE,
                    f"record health of {record.site_name}",
                    lambda: self.context.registry.save(updated),
                    simulated=None,
                )
            except (StateRegistryError, OSError) as exc:
                result.warnings.append(f"Could not record health of {record.site_name}: {exc}")

        result.success = not errors
        if errors:
            result.error_kind = ErrorKind.REPAIR
            result.error_message = "; ".join(f"{item.step}: {item.detail}" for item in errors)
            result.message = f"Repair of {record.site_name} finished with {len(errors)} failing step(s)."
        elif run.check_only and problems:
            result.message = f"{record.site_name} has {len(problems)} problem(s); run repair to fix them."
        elif fixed:
            result.message = f"Repaired {record.site_name}: fixed {', '.join(item.step for item in fixed)}."
        else:
            result.message = f"{record.site_name} is healthy; nothing to repair."

    # Steps ---------------------------------------------------------------
    def _repair_files(self, run: _RepairRun) -> tuple[StepStatus, str]:
        payload = self.context.payload_dir
        if payload is None or not payload.is_dir():
            return StepStatus.WARNING, f"Application payload not found at {payload}; files not verified."
        install_path = run.record.install_path
        protected = self.context.policy.protected_paths
        missing = [
            relative
            for relative, _path in iter_files(payload, exclude=protected)
            if not (install_path / relative).exists()
        ]
        if not missing:
            return StepStatus.OK, "All application files present"
        if run.check_only:
            return StepStatus.WARNING, f"{len(missing)} file(s) missing, e.g. {missing[0]}"
        restored = run.executor.run(
            StepId.REPAIR_FILES,
            f"copy {len(missing)} missing file(s) from {payload}",
            lambda: copy_tree_files(payload, install_path, skip=protected, only_missing=True),
            simulated=missing,
        )
        return StepStatus.FIXED, f"Restored {len(restored)} missing file(s) from the payload"

    def _repair_site(self, run: _RepairRun) -> tuple[StepStatus, str]:
        record = run.record
        site = self.context.site
        name = record.site_name
        problems: list[str] = []
        port = site.app_pool_port(name)
        if not site.app_pool_exists(name):
            problems.append("app pool missing")
        elif port is None:
            problems.append("app pool has no upstream server")
        elif port != record.port:
            problems.append(f"app pool forwards to port {port}, expected {record.port}")
        if not site.site_exists(name):
            problems.append("site missing")
        elif not site.site_points_to(name, record.install_path):
            problems.append(f"site does not serve {record.install_path}")
        if not site.is_enabled(name):
            problems.append("site disabled")
        if not problems:
            return StepStatus.OK, "Site and app pool configured"
        if run.check_only:
            return StepStatus.WARNING, ", ".join(problems)
        run.executor.run(
            StepId.REPAIR_SITE,
            f"ensure app pool for {name}",
            lambda: site.ensure_app_pool(name, record.port),
            simulated=True,
        )
        run.executor.run(
            StepId.REPAIR_SITE,
            f"ensure site for {name}",
            lambda: site.ensure_site(name, record.install_path, record.port),
            simulated=True,
        )
        return StepStatus.FIXED, "Fixed: " + ", ".join(problems)

    def _repair_service(self, run: _RepairRun) -> tuple[StepStatus, str]:
        record = run.record
        context = self.context
        service = context.service
        name = record.site_name
        expected = context.exec_start_for(record)
        problems: list[str] = []
        registered = service.installed_exec(name)
        if registered is None:
            problems.append("service not registered")
        elif registered != expected:
            problems.append("service registered to a different executable")
        if not service.is_running(name):
            problems.append("service not running")
        if not problems:
            return StepStatus.OK, "Service registered and running"
        if run.check_only:
            return StepStatus.WARNING, ", ".join(problems)
        run.executor.run(
            StepId.REPAIR_SERVICE,
            f"register service for {name}",
            lambda: service.ensure_installed(name, expected, record.install_path),
            simulated=True,
        )
        run.executor.run(
            StepId.REPAIR_SERVICE,
            f"start service for {name}",
            lambda: service.ensure_running(name, timeout=context.start_timeout),
            simulated=True,
        )
        return StepStatus.FIXED, "Fixed: " + ", ".join(problems)

    def _repair_config(self, run: _RepairRun) -> tuple[StepStatus, str]:
        context = self.context
        record = run.record
        path = context.app_config_path(record)
        expected = context.templates.render_to_string(APP_CONFIG_TEMPLATE, context.app_config_context(record))
        current = path.read_text(encoding="utf-8") if path.is_file() else None
        if current == expected:
            return StepStatus.OK, f"{APP_CONFIG_NAME} up to date"
        problem = f"{APP_CONFIG_NAME} missing" if current is None else f"{APP_CONFIG_NAME} differs"
        if run.check_only:
            return StepStatus.WARNING, problem
        run.executor.run(
            StepId.REPAIR_CONFIG,
            f"regenerate {path}",
            lambda: context.render_app_config(record),
            simulated=True,
        )
        return StepStatus.FIXED, f"Regenerated {APP_CONFIG_NAME}"

    def _repair_database(self, run: _RepairRun) -> tuple[StepStatus, str]:
        status = self.context.database.check(run.record)
        if not status.reachable:
            return StepStatus.ERROR, f"Database unreachable: {status.detail or 'no detail'}"
        return StepStatus.OK, "Database reachable"


__all__ = ["RepairOrchestrator"]
