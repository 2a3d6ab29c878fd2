"""In-place upgrade of a registered storefront instance.

The upgrade walks ten states in strict order, each gated on the previous
one: Detect, CheckRemote, AcquirePackage, Backup, Stop, Replace, Migrate,
Reconfigure, Start and Verify & Commit.

Only a failed migration, or an unexpected error while files are being
replaced, restores the backup. A failed backup aborts before the host is
touched. Reconfigure problems are warnings; a start failure is reported with
the backup path but the new files stay in place.

Cancellation is honoured between states up to the Replace boundary. Once
files are being replaced the run always continues to a terminal state.
"""
from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ..archive import copy_tree_files
from ..backups import BackupError
from ..locking import LockTimeoutError
from ..models import (
    BackupRecord,
    ErrorKind,
    InstanceRecord,
    ReleaseInfo,
    StepStatus,
    UpgradeResult,
)
from ..packages import AcquiredPackage, PackageError
from ..progress import UPGRADE_STEPS, CancellationToken, ProgressReporter, StepId
from ..providers.database import DatabaseError
from ..providers.releases import ReleaseError
from ..state import StateRegistryError
from ..versioning import is_newer, upgrade_requirements
from .base import HOST_ERRORS, Orchestrator
from .executor import ExecutionMode, StepExecutor, executor_for

LOGGER = logging.getLogger(__name__)

# Overall percentage reached when each state completes.
_PERCENT: dict[StepId, float] = {
    StepId.DETECT: 5,
    StepId.CHECK_REMOTE: 10,
    StepId.ACQUIRE_PACKAGE: 40,
    StepId.BACKUP: 50,
    StepId.STOP: 55,
    StepId.REPLACE: 70,
    StepId.MIGRATE: 80,
    StepId.RECONFIGURE: 88,
    StepId.START: 95,
    StepId.VERIFY_COMMIT: 100,
}


@dataclass(slots=True)
class _UpgradeRun:
    site_name: str
    reporter: ProgressReporter
    executor: StepExecutor
    result: UpgradeResult
    cancel: CancellationToken | None = None
    record: InstanceRecord | None = None
    updated: InstanceRecord | None = None
    release: ReleaseInfo | None = None
    package: AcquiredPackage | None = None
    backup: BackupRecord | None = None
    stopped: bool = False
    replacing: bool = False


class UpgradeOrchestrator(Orchestrator):
    """Upgrade an instance to the newest published release."""

    def check(self, site_name: str) -> UpgradeResult:
        """Run Detect and CheckRemote only; report whether an update exists."""
        reporter = ProgressReporter((StepId.DETECT, StepId.CHECK_REMOTE))
        run = _UpgradeRun(
            site_name=site_name,
            reporter=reporter,
            executor=executor_for(ExecutionMode.SIMULATED),
            result=UpgradeResult(success=False, message=""),
        )
        if not self._detect(run) or not self._check_remote(run):
            return run.result
        run.result.success = True
        run.result.message = (
            f"Update available for {site_name}: {run.result.from_version} -> {run.result.to_version}."
        )
        return run.result

    def upgrade(
        self,
        site_name: str,
        *,
        mode: ExecutionMode = ExecutionMode.REAL,
        reporter: ProgressReporter | None = None,
        cancel: CancellationToken | None = None,
    ) -> UpgradeResult:
        """Upgrade *site_name*; always returns a terminal result."""
        run = _UpgradeRun(
            site_name=site_name,
            reporter=reporter if reporter is not None else ProgressReporter(UPGRADE_STEPS),
            executor=executor_for(mode),
            result=UpgradeResult(success=False, message=""),
            cancel=cancel,
        )
        try:
            with self._locked(site_name):
                self._execute(run)
        except LockTimeoutError as exc:
            self._failed(
                run.result,
                run.reporter,
                StepId.DETECT,
                ErrorKind.LOCKED,
                f"Instance '{site_name}' is busy: {exc}",
            )
        return run.result

    def _execute(self, run: _UpgradeRun) -> None:
        states = (
            (StepId.DETECT, self._detect),
            (StepId.CHECK_REMOTE, self._check_remote),
            (StepId.ACQUIRE_PACKAGE, self._acquire),
            (StepId.BACKUP, self._backup),
            (StepId.STOP, self._stop),
            (StepId.REPLACE, self._replace),
            (StepId.MIGRATE, self._migrate),
            (StepId.RECONFIGURE, self._reconfigure_step),
            (StepId.START, self._start_step),
            (StepId.VERIFY_COMMIT, self._commit),
        )
        for step, handler in states:
            if self._cancel_requested(run, step):
                return
            try:
                proceed = handler(run)
            except Exception as exc:  # noqa: BLE001 - every run ends in a result
                LOGGER.exception("Unexpected error during %s", step.value)
                self._failed(
                    run.result,
                    run.reporter,
                    step,
                    ErrorKind.UNEXPECTED,
                    f"Unexpected error during {step.value}: {exc}",
                )
                if step in (StepId.REPLACE, StepId.MIGRATE):
                    self._rollback(run)
                elif run.stopped:
                    self._resume(run)
                return
            if not proceed:
                return

    def _cancel_requested(self, run: _UpgradeRun, step: StepId) -> bool:
        if run.cancel is None or not run.cancel.cancelled or run.replacing:
            return False
        if run.stopped:
            self._resume(run)
        self._failed(
            run.result,
            run.reporter,
            step,
            ErrorKind.CANCELLED,
            f"Upgrade of {run.site_name} cancelled before {step.value}.",
        )
        return True

    # States --------------------------------------------------------------
    def _detect(self, run: _UpgradeRun) -> bool:
        run.reporter.begin(StepId.DETECT, f"Looking up {run.site_name}")
        record = self.context.registry.get(run.site_name)
        if record is None:
            self._failed(
                run.result,
                run.reporter,
                StepId.DETECT,
                ErrorKind.DETECTION,
                f"Instance '{run.site_name}' not found.",
            )
            return False
        run.record = record
        run.result.from_version = record.version
        policy = self.context.policy
        requirements = upgrade_requirements(
            record.version,
            min_version=policy.min_version,
            breaking_versions=policy.breaking_versions,
        )
        if not requirements.can_upgrade:
            self._failed(run.result, run.reporter, StepId.DETECT, ErrorKind.VALIDATION, requirements.message)
            return False
        self._passed(
            run.result,
            run.reporter,
            StepId.DETECT,
            f"{run.site_name} is at version {record.version}",
            percent=_PERCENT[StepId.DETECT],
        )
        return True

    def _check_remote(self, run: _UpgradeRun) -> bool:
        assert run.record is not None
        run.reporter.begin(StepId.CHECK_REMOTE, "Checking for a newer release")
        try:
            release = self.context.releases.get_latest_release()
        except ReleaseError as exc:
            self._failed(
                run.result,
                run.reporter,
                StepId.CHECK_REMOTE,
                ErrorKind.ACQUISITION,
                f"Update check failed: {exc}",
            )
            return False
        run.release = release
        run.result.to_version = release.version
        if not is_newer(release.version, run.record.version):
            message = f"{run.site_name} is up to date (version {run.record.version})."
            run.result.success = True
            run.result.up_to_date = True
            run.result.message = message
            self._passed(run.result, run.reporter, StepId.CHECK_REMOTE, message, percent=100)
            for step in UPGRADE_STEPS[UPGRADE_STEPS.index(StepId.CHECK_REMOTE) + 1 :]:
                run.reporter.skip(step, "up to date")
            return False

        policy = self.context.policy
        requirements = upgrade_requirements(
            run.record.version,
            release.version,
            min_version=policy.min_version,
            breaking_versions=policy.breaking_versions,
        )
        if requirements.has_breaking_changes:
            self._warned(run.result, run.reporter, StepId.CHECK_REMOTE, requirements.message)
        self._passed(
            run.result,
            run.reporter,
            StepId.CHECK_REMOTE,
            f"Release {release.version} is available",
            percent=_PERCENT[StepId.CHECK_REMOTE],
        )
        return True

    def _acquire(self, run: _UpgradeRun) -> bool:
        assert run.release is not None
        release = run.release
        packages = self.context.packages
        run.reporter.begin(StepId.ACQUIRE_PACKAGE, f"Acquiring package for {release.version}")
        callback = run.reporter.download_callback(
            StepId.ACQUIRE_PACKAGE,
            start=_PERCENT[StepId.CHECK_REMOTE],
            end=_PERCENT[StepId.ACQUIRE_PACKAGE],
            interval=self.context.policy.progress_interval,
        )
        stand_in = AcquiredPackage(
            path=packages.cache_path(release.version, "simulated.zip"),
            version=release.version,
            source="simulated",
        )
        try:
            package = run.executor.run(
                StepId.ACQUIRE_PACKAGE,
                f"acquire package for {release.version}",
                lambda: packages.acquire(release, on_progress=callback),
                simulated=stand_in,
            )
        except PackageError as exc:
            self._failed(run.result, run.reporter, StepId.ACQUIRE_PACKAGE, ErrorKind.ACQUISITION, str(exc))
            return False
        run.package = package
        self._passed(
            run.result,
            run.reporter,
            StepId.ACQUIRE_PACKAGE,
            f"Package {package.path.name} ({package.source})",
            percent=_PERCENT[StepId.ACQUIRE_PACKAGE],
        )
        return True

    def _backup(self, run: _UpgradeRun) -> bool:
        assert run.record is not None
        record = run.record
        run.reporter.begin(StepId.BACKUP, f"Backing up {record.install_path}")
        try:
            backup = run.executor.run(
                StepId.BACKUP,
                f"back up {record.install_path}",
                lambda: self.context.backups.create_backup(record),
                simulated=None,
            )
        except BackupError as exc:
            self._failed(run.result, run.reporter, StepId.BACKUP, ErrorKind.BACKUP, f"Backup failed: {exc}")
            return False
        run.backup = backup
        detail = "backup simulated"
        if backup is not None:
            run.result.backup_path = backup.backup_path
            detail = f"Backup {backup.backup_id} at {backup.backup_path}"
        self._passed(run.result, run.reporter, StepId.BACKUP, detail, percent=_PERCENT[StepId.BACKUP])
        return True

    def _stop(self, run: _UpgradeRun) -> bool:
        name = run.site_name
        run.reporter.begin(StepId.STOP, f"Stopping {name}")
        context = self.context
        try:
            was_running = run.executor.run(
                StepId.STOP, f"stop service for {name}", lambda: context.service.stop(name), simulated=True
            )
            run.stopped = True
            run.executor.run(StepId.STOP, f"disable site for {name}", lambda: context.site.disable(name), simulated=None)
        except HOST_ERRORS as exc:
            self._resume(run)
            self._failed(run.result, run.reporter, StepId.STOP, ErrorKind.STOP, f"Could not stop {name}: {exc}")
            return False
        detail = "Service stopped" if was_running else "Service was already stopped"
        self._passed(run.result, run.reporter, StepId.STOP, detail, percent=_PERCENT[StepId.STOP])
        return True

    def _replace(self, run: _UpgradeRun) -> bool:
        assert run.record is not None and run.package is not None
        install_path = run.record.install_path
        package = run.package
        run.replacing = True
        run.reporter.begin(StepId.REPLACE, f"Replacing files in {install_path}")
        skip = self._replace_skips(install_path)

        def _copy() -> list[str]:
            work_dir = self.context.work_dir
            if work_dir is not None:
                work_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(dir=work_dir, prefix=".extract-") as scratch:
                app_dir = self.context.packages.extract(package.path, Path(scratch))
                return copy_tree_files(app_dir, install_path, skip=skip)

        try:
            written = run.executor.run(
                StepId.REPLACE, f"copy {package.path.name} into {install_path}", _copy, simulated=[]
            )
        except PackageError as exc:
            self._failed(
                run.result,
                run.reporter,
                StepId.REPLACE,
                ErrorKind.ACQUISITION,
                f"Package could not be unpacked: {exc}",
            )
            self._rollback(run)
            return False
        self._passed(
            run.result,
            run.reporter,
            StepId.REPLACE,
            f"{len(written)} file(s) replaced",
            percent=_PERCENT[StepId.REPLACE],
        )
        return True

    def _replace_skips(self, install_path: Path) -> list[str]:
        policy = self.context.policy
        skip = list(policy.protected_paths)
        skip.extend(name for name in policy.preserved_files if (install_path / name).exists())
        return skip

    def _migrate(self, run: _UpgradeRun) -> bool:
        assert run.record is not None
        record = run.record
        run.reporter.begin(StepId.MIGRATE, "Applying database migrations")
        try:
            output = run.executor.run(
                StepId.MIGRATE,
                f"migrate database {record.database_name or record.site_name}",
                lambda: self.context.database.run_migrations(record),
                simulated="",
            )
        except (DatabaseError, OSError) as exc:
            self._failed(run.result, run.reporter, StepId.MIGRATE, ErrorKind.MIGRATION, f"Migration failed: {exc}")
            self._rollback(run)
            return False
        self._passed(
            run.result,
            run.reporter,
            StepId.MIGRATE,
            output.splitlines()[-1] if output else "Migrations applied",
            percent=_PERCENT[StepId.MIGRATE],
        )
        return True

    def _reconfigure_step(self, run: _UpgradeRun) -> bool:
        assert run.record is not None and run.release is not None
        updated = run.record.copy()
        updated.version = run.release.version
        run.updated = updated
        run.reporter.begin(StepId.RECONFIGURE, "Reconfiguring site, app pool and service")
        problems = self._reconfigure(updated, run.executor)
        for problem in problems:
            self._warned(run.result, run.reporter, StepId.RECONFIGURE, problem)
        self._passed(
            run.result,
            run.reporter,
            StepId.RECONFIGURE,
            f"{len(problems)} problem(s) reported" if problems else "Bindings up to date",
            percent=_PERCENT[StepId.RECONFIGURE],
            status=StepStatus.WARNING if problems else StepStatus.OK,
        )
        return True

    def _start_step(self, run: _UpgradeRun) -> bool:
        assert run.updated is not None
        run.reporter.begin(StepId.START, f"Starting {run.site_name}")
        error = self._start(run.updated, run.executor)
        if error is not None:
            self._failed(run.result, run.reporter, StepId.START, ErrorKind.START, error)
            run.result.warnings.append(error)
            run.result.message = (
                f"{run.site_name} files and schema are at {run.updated.version} but the service "
                f"did not start: {error}"
            )
            return False
        run.stopped = False
        self._passed(run.result, run.reporter, StepId.START, "Service running", percent=_PERCENT[StepId.START])
        return True

    def _commit(self, run: _UpgradeRun) -> bool:
        assert run.updated is not None
        updated = run.updated
        context = self.context
        run.reporter.begin(StepId.VERIFY_COMMIT, "Recording the new version")
        try:
            status = run.executor.run(
                StepId.VERIFY_COMMIT,
                "check database",
                lambda: context.database.check(updated),
                simulated=None,
            )
        except HOST_ERRORS as exc:
            status = None
            self._warned(run.result, run.reporter, StepId.VERIFY_COMMIT, f"Database check failed: {exc}")
        if status is not None and status.reachable:
            if status.product_count is not None:
                updated.product_count = status.product_count
            if status.order_count is not None:
                updated.order_count = status.order_count
            if status.user_count is not None:
                updated.user_count = status.user_count
        try:
            run.executor.run(
                StepId.VERIFY_COMMIT,
                f"record {run.site_name} at {updated.version}",
                lambda: context.registry.save(updated),
                simulated=None,
            )
        except (StateRegistryError, OSError) as exc:
            self._failed(
                run.result,
                run.reporter,
                StepId.VERIFY_COMMIT,
                ErrorKind.UNEXPECTED,
                f"Upgrade applied but the registry could not be updated: {exc}",
            )
            return False
        result = run.result
        run.executor.run(
            StepId.VERIFY_COMMIT,
            "record upgrade history",
            lambda: context.registry.record_history(
                run.site_name,
                {
                    "action": "upgrade",
                    "from_version": result.from_version,
                    "to_version": updated.version,
                    "backup_path": str(result.backup_path) if result.backup_path else None,
                },
            ),
            simulated=None,
        )
        result.success = True
        result.message = f"Upgraded {run.site_name} from {result.from_version} to {updated.version}."
        if result.backup_path is not None:
            result.message += f" Backup retained at {result.backup_path}."
        self._passed(result, run.reporter, StepId.VERIFY_COMMIT, result.message, percent=100)
        return True

    # Recovery ------------------------------------------------------------
    def _rollback(self, run: _UpgradeRun) -> None:
        """Restore the backup and bring the previous version back up."""
        reporter = run.reporter
        backup = run.backup
        reporter.begin(StepId.ROLLBACK, "Restoring the pre-upgrade backup")
        restored = run.executor.run(
            StepId.ROLLBACK,
            "restore files from backup",
            lambda: backup is not None and self.context.backups.restore(backup),
            simulated=True,
        )
        if restored:
            run.result.rolled_back = True
        else:
            location = backup.backup_path if backup is not None else "(none)"
            self._warned(
                run.result,
                reporter,
                StepId.ROLLBACK,
                f"Rollback could not restore files; backup retained at {location}.",
            )
        self._resume(run)
        if run.result.rolled_back:
            run.result.message = f"{run.result.error_message} Previous version restored from backup."
            self._passed(run.result, reporter, StepId.ROLLBACK, "Previous version restored")

    def _resume(self, run: _UpgradeRun) -> None:
        """Restart the service and site that Stop took down."""
        if run.record is None:
            return
        record = run.record
        context = self.context
        try:
            run.executor.run(
                StepId.ROLLBACK,
                f"restart service for {record.site_name}",
                lambda: context.service.ensure_running(record.site_name, timeout=context.start_timeout),
                simulated=True,
            )
            run.executor.run(
                StepId.ROLLBACK,
                f"enable site for {record.site_name}",
                lambda: context.site.enable(record.site_name),
                simulated=None,
            )
        except HOST_ERRORS as exc:
            self._warned(run.result, run.reporter, StepId.ROLLBACK, f"Could not restart {record.site_name}: {exc}")
            return
        run.stopped = False


__all__ = ["UpgradeOrchestrator"]
