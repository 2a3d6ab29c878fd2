"""Removal of a storefront instance from the host.

The database is only dropped when both ``remove_database`` and
``confirm_database_drop`` are set. Protected data paths (uploads and logs)
inside the install path survive unless ``keep_user_data`` is turned off.
Whatever could not be removed is reported as a warning by the final
verification step.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..archive import find_protected, holds_protected, is_protected, iter_files
from ..locking import LockTimeoutError
from ..models import ErrorKind, InstanceRecord, StepStatus, UninstallResult
from ..progress import UNINSTALL_STEPS, ProgressReporter, StepId
from ..state import StateRegistryError
from .base import HOST_ERRORS, Orchestrator
from .executor import ExecutionMode, StepExecutor, executor_for

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class UninstallOptions:
    """Operator choices for an uninstall run."""

    remove_database: bool = False
    confirm_database_drop: bool = False
    keep_user_data: bool = True

    @property
    def drop_database(self) -> bool:
        """Return ``True`` only when both database opt-ins are given."""
        return self.remove_database and self.confirm_database_drop


@dataclass(slots=True)
class _UninstallRun:
    record: InstanceRecord
    options: UninstallOptions
    executor: StepExecutor
    reporter: ProgressReporter
    result: UninstallResult
    keep: tuple[str, ...] = ()
    kept: list[Path] = field(default_factory=list)


class UninstallOrchestrator(Orchestrator):
    """Tear down the service, site, files and registry entry of an instance."""

    def uninstall(
        self,
        site_name: str,
        *,
        options: UninstallOptions | None = None,
        mode: ExecutionMode = ExecutionMode.REAL,
        reporter: ProgressReporter | None = None,
    ) -> UninstallResult:
        """Remove *site_name*; the database stays unless dropping it is confirmed."""
        reporter = reporter if reporter is not None else ProgressReporter(UNINSTALL_STEPS)
        result = UninstallResult(success=False, message="")
        try:
            with self._locked(site_name):
                self._uninstall(site_name, options or UninstallOptions(), executor_for(mode), reporter, result)
        except LockTimeoutError as exc:
            self._failed(result, reporter, StepId.DETECT, ErrorKind.LOCKED, f"Instance '{site_name}' is busy: {exc}")
        return result

    def _uninstall(
        self,
        site_name: str,
        options: UninstallOptions,
        executor: StepExecutor,
        reporter: ProgressReporter,
        result: UninstallResult,
    ) -> None:
        reporter.begin(StepId.DETECT, f"Looking up {site_name}")
        record = self.context.registry.get(site_name)
        if record is None:
            self._failed(result, reporter, StepId.DETECT, ErrorKind.DETECTION, f"Instance '{site_name}' not found.")
            return
        self._passed(result, reporter, StepId.DETECT, f"{site_name} at {record.install_path}", percent=5)

        reporter.begin(StepId.VALIDATE, "Checking removal options")
        if options.remove_database and not options.confirm_database_drop:
            self._failed(
                result,
                reporter,
                StepId.VALIDATE,
                ErrorKind.VALIDATION,
                "Dropping the database needs a second, separate confirmation; nothing was removed.",
            )
            return
        self._passed(
            result,
            reporter,
            StepId.VALIDATE,
            "database will be dropped" if options.drop_database else "database will be kept",
            percent=10,
        )

        run = _UninstallRun(record=record, options=options, executor=executor, reporter=reporter, result=result)
        self._remove_service(run)
        self._remove_site(run)
        self._drop_database(run)
        self._remove_files(run)
        self._remove_record(run)
        self._verify_removal(run)

        result.kept_paths = list(run.kept)
        result.success = True
        result.message = f"Uninstalled {site_name}."
        if not result.database_dropped:
            result.message += f" Database {record.database_name or site_name} was kept."
        if run.kept:
            result.message += f" Kept {len(run.kept)} data path(s)."
        if result.warnings:
            result.message += f" {len(result.warnings)} warning(s)."

    # Steps ---------------------------------------------------------------
    def _attempt(
        self,
        run: _UninstallRun,
        step: StepId,
        description: str,
        action: Callable[[], object],
        *,
        percent: float,
    ) -> bool:
        run.reporter.begin(step, description)
        try:
            run.executor.run(step, description, action, simulated=None)
        except HOST_ERRORS as exc:
            self._warned(run.result, run.reporter, step, f"Could not {description}: {exc}")
            self._passed(run.result, run.reporter, step, str(exc), percent=percent, status=StepStatus.WARNING)
            return False
        self._passed(run.result, run.reporter, step, description, percent=percent)
        return True

    def _remove_service(self, run: _UninstallRun) -> None:
        name = run.record.site_name
        self._attempt(
            run,
            StepId.REMOVE_SERVICE,
            f"remove service for {name}",
            lambda: self.context.service.remove(name),
            percent=25,
        )

    def _remove_site(self, run: _UninstallRun) -> None:
        name = run.record.site_name
        self._attempt(
            run,
            StepId.REMOVE_SITE,
            f"remove site and app pool for {name}",
            lambda: self.context.site.remove(name),
            percent=40,
        )

    def _drop_database(self, run: _UninstallRun) -> None:
        record = run.record
        if not run.options.drop_database:
            self._skipped(run.result, run.reporter, StepId.DROP_DATABASE, "Database kept")
            return
        dropped = self._attempt(
            run,
            StepId.DROP_DATABASE,
            f"drop database {record.database_name or record.site_name}",
            lambda: self.context.database.drop(record),
            percent=55,
        )
        run.result.database_dropped = dropped and not run.executor.simulated

    def _remove_files(self, run: _UninstallRun) -> None:
        install_path = run.record.install_path
        run.keep = self.context.policy.protected_paths if run.options.keep_user_data else ()
        run.kept.extend(find_protected(install_path, run.keep))
        self._attempt(
            run,
            StepId.REMOVE_FILES,
            f"remove application files from {install_path}",
            lambda: _remove_tree(install_path, run.keep),
            percent=75,
        )

    def _remove_record(self, run: _UninstallRun) -> None:
        name = run.record.site_name
        run.reporter.begin(StepId.REMOVE_RECORD, f"Unregistering {name}")
        try:
            run.executor.run(
                StepId.REMOVE_RECORD,
                f"unregister {name}",
                lambda: self.context.registry.remove(name),
                simulated=None,
            )
        except (StateRegistryError, OSError) as exc:
            self._warned(run.result, run.reporter, StepId.REMOVE_RECORD, f"Could not unregister {name}: {exc}")
            self._passed(run.result, run.reporter, StepId.REMOVE_RECORD, str(exc), percent=85, status=StepStatus.WARNING)
            return
        run.executor.run(
            StepId.REMOVE_RECORD,
            "record uninstall history",
            lambda: self.context.registry.record_history(
                name,
                {
                    "action": "uninstall",
                    "from_version": run.record.version,
                    "database_dropped": run.result.database_dropped,
                },
            ),
            simulated=None,
        )
        self._passed(run.result, run.reporter, StepId.REMOVE_RECORD, f"{name} unregistered", percent=85)

    def _verify_removal(self, run: _UninstallRun) -> None:
        record = run.record
        name = record.site_name
        reporter = run.reporter
        reporter.begin(StepId.VERIFY_REMOVAL, "Looking for leftovers")
        if run.executor.simulated:
            self._skipped(run.result, reporter, StepId.VERIFY_REMOVAL, "nothing removed in a simulated run")
            return
        context = self.context
        orphans: list[str] = []
        if context.service.installed_exec(name) is not None:
            orphans.append(f"service for {name} is still registered")
        if context.site.site_exists(name):
            orphans.append(f"site for {name} still exists")
        if context.site.app_pool_exists(name):
            orphans.append(f"app pool for {name} still exists")
        if context.registry.get(name) is not None:
            orphans.append(f"registry entry for {name} still exists")
        install_path = record.install_path
        if install_path.exists():
            leftovers = [relative for relative, _ in iter_files(install_path, exclude=run.keep)]
            if leftovers:
                orphans.append(f"{len(leftovers)} item(s) left in {install_path}")
        for orphan in orphans:
            self._warned(run.result, reporter, StepId.VERIFY_REMOVAL, f"Orphaned: {orphan}")
        self._passed(
            run.result,
            reporter,
            StepId.VERIFY_REMOVAL,
            f"{len(orphans)} orphaned item(s)" if orphans else "Removal complete",
            percent=100,
            status=StepStatus.WARNING if orphans else StepStatus.OK,
        )


def _remove_tree(root: Path, keep: tuple[str, ...]) -> None:
    """Delete *root* except paths matching *keep* at any depth."""
    if not root.exists():
        return
    if not keep:
        shutil.rmtree(root)
        return
    _prune(root, root, keep)
    if not any(root.iterdir()):
        root.rmdir()


def _prune(root: Path, directory: Path, keep: tuple[str, ...]) -> None:
    for child in list(directory.iterdir()):
        relative = child.relative_to(root)
        if is_protected(relative, keep):
            continue
        if child.is_dir() and not child.is_symlink():
            if holds_protected(relative, keep):
                _prune(root, child, keep)
                if not any(child.iterdir()):
                    child.rmdir()
                continue
            shutil.rmtree(child)
        else:
            child.unlink()


__all__ = ["UninstallOptions", "UninstallOrchestrator"]
