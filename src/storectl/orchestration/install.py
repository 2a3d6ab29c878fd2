"""Fresh installation and reconfiguration of storefront instances."""
from __future__ import annotations

import logging
import re
import shutil
import tempfile
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path

from ..archive import copy_tree_files
from ..locking import LockTimeoutError
from ..models import ErrorKind, InstallResult, InstanceRecord, ReleaseInfo, StepStatus
from ..packages import AcquiredPackage, PackageError
from ..progress import INSTALL_STEPS, RECONFIGURE_STEPS, CancellationToken, ProgressReporter, StepId
from ..providers.database import DatabaseError
from ..providers.releases import ReleaseError
from ..state import StateRegistryError
from ..versioning import normalize_version, parse_version
from .base import HOST_ERRORS, Orchestrator
from .executor import ExecutionMode, StepExecutor, executor_for

LOGGER = logging.getLogger(__name__)

_SITE_NAME_RE = re.compile(r"[a-z0-9-]+")
_PACKAGE_VERSION_RE = re.compile(r"v?(\d+\.\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)


def validate_site_name(name: str) -> str:
    """Validate and normalise a site name."""
    normalised = name.strip()
    if not normalised:
        raise ValueError("Site name must be a non-empty string.")
    if not _SITE_NAME_RE.fullmatch(normalised):
        raise ValueError("Site name must match [a-z0-9-]+.")
    return normalised


@dataclass(slots=True)
class InstallRequest:
    """What a fresh installation should create."""

    site_name: str
    install_path: Path
    port: int
    database_name: str = ""
    database_server: str | None = None
    package: Path | None = None
    version: str | None = None


@dataclass(slots=True)
class _InstallRun:
    reporter: ProgressReporter
    executor: StepExecutor
    result: InstallResult
    cancel: CancellationToken | None = None
    created_path: bool = False
    provisioned: bool = False


class InstallOrchestrator(Orchestrator):
    """Create new instances and re-apply host bindings for existing ones."""

    # Fresh install -------------------------------------------------------
    def install(
        self,
        request: InstallRequest,
        *,
        mode: ExecutionMode = ExecutionMode.REAL,
        reporter: ProgressReporter | None = None,
        cancel: CancellationToken | None = None,
    ) -> InstallResult:
        """Install a new instance; nothing is registered unless every step succeeds."""
        run = _InstallRun(
            reporter=reporter if reporter is not None else ProgressReporter(INSTALL_STEPS),
            executor=executor_for(mode),
            result=InstallResult(success=False, message=""),
            cancel=cancel,
        )
        lock_name = request.site_name.strip()
        guard = self._locked(lock_name, registry_wide=True) if _SITE_NAME_RE.fullmatch(lock_name) else nullcontext()
        try:
            with guard:
                self._install(request, run)
        except LockTimeoutError as exc:
            self._failed(
                run.result,
                run.reporter,
                StepId.VALIDATE,
                ErrorKind.LOCKED,
                f"Instance '{request.site_name}' is busy: {exc}",
            )
        return run.result

    def _install(self, request: InstallRequest, run: _InstallRun) -> None:
        record = self._validate(request, run)
        if record is None:
            return
        try:
            self._provision(request, record, run)
        except Exception as exc:  # noqa: BLE001 - every run ends in a result
            LOGGER.exception("Unexpected error while installing %s", record.site_name)
            self._failed(
                run.result,
                run.reporter,
                StepId.COMMIT,
                ErrorKind.UNEXPECTED,
                f"Unexpected error while installing {record.site_name}: {exc}",
            )
            self._cleanup(record, run)

    def _validate(self, request: InstallRequest, run: _InstallRun) -> InstanceRecord | None:
        reporter = run.reporter
        result = run.result
        reporter.begin(StepId.VALIDATE, f"Validating {request.site_name}")
        try:
            name = validate_site_name(request.site_name)
        except ValueError as exc:
            self._failed(result, reporter, StepId.VALIDATE, ErrorKind.VALIDATION, str(exc))
            return None
        if not 1 <= request.port <= 65535:
            self._failed(
                result,
                reporter,
                StepId.VALIDATE,
                ErrorKind.VALIDATION,
                f"Port must be between 1 and 65535. Got {request.port}.",
            )
            return None
        registry = self.context.registry
        if registry.get(name) is not None:
            self._failed(
                result, reporter, StepId.VALIDATE, ErrorKind.VALIDATION, f"Instance '{name}' already exists."
            )
            return None
        for other in registry.list_instances():
            if other.port == request.port:
                self._failed(
                    result,
                    reporter,
                    StepId.VALIDATE,
                    ErrorKind.VALIDATION,
                    f"Port {request.port} is already used by '{other.site_name}'.",
                )
                return None
        path = Path(request.install_path)
        if path.exists() and (not path.is_dir() or any(path.iterdir())):
            self._failed(
                result,
                reporter,
                StepId.VALIDATE,
                ErrorKind.VALIDATION,
                f"Install path {path} already exists and is not empty.",
            )
            return None
        record = InstanceRecord(
            site_name=name,
            install_path=path,
            version="0.0.0",
            database_server=request.database_server or self.context.database_server,
            database_name=request.database_name or name,
            port=request.port,
        )
        self._passed(result, reporter, StepId.VALIDATE, f"{name} on port {request.port} at {path}", percent=5)
        return record

    def _provision(self, request: InstallRequest, record: InstanceRecord, run: _InstallRun) -> None:
        reporter = run.reporter
        result = run.result
        context = self.context

        if self._cancelled(record, run, StepId.CHECK_REMOTE):
            return
        package = self._resolve_package(request, run)
        if package is None:
            return
        record.version = package.version

        if self._cancelled(record, run, StepId.REPLACE):
            return
        reporter.begin(StepId.REPLACE, f"Copying files into {record.install_path}")
        run.created_path = not record.install_path.exists()
        try:
            written = run.executor.run(
                StepId.REPLACE,
                f"copy {package.path.name} into {record.install_path}",
                lambda: self._copy_package(package, record.install_path),
                simulated=[],
            )
        except PackageError as exc:
            self._failed(result, reporter, StepId.REPLACE, ErrorKind.ACQUISITION, f"Package could not be unpacked: {exc}")
            self._cleanup(record, run)
            return
        self._passed(result, reporter, StepId.REPLACE, f"{len(written)} file(s) copied", percent=60)

        if self._cancelled(record, run, StepId.MIGRATE):
            return
        reporter.begin(StepId.MIGRATE, "Creating the database schema")
        try:
            run.executor.run(
                StepId.MIGRATE,
                f"migrate database {record.database_name}",
                lambda: context.database.run_migrations(record),
                simulated="",
            )
        except (DatabaseError, OSError) as exc:
            self._failed(result, reporter, StepId.MIGRATE, ErrorKind.MIGRATION, f"Migration failed: {exc}")
            self._cleanup(record, run)
            return
        self._passed(result, reporter, StepId.MIGRATE, "Schema created", percent=70)

        if self._cancelled(record, run, StepId.RECONFIGURE):
            return
        reporter.begin(StepId.RECONFIGURE, "Creating app pool, site and service")
        run.provisioned = True
        problems = self._reconfigure(record, run.executor)
        if problems:
            self._failed(result, reporter, StepId.RECONFIGURE, ErrorKind.RECONFIGURATION, "; ".join(problems))
            self._cleanup(record, run)
            return
        self._passed(result, reporter, StepId.RECONFIGURE, "Host bindings created", percent=85)

        if self._cancelled(record, run, StepId.START):
            return
        reporter.begin(StepId.START, f"Starting {record.site_name}")
        error = self._start(record, run.executor)
        if error is not None:
            self._failed(result, reporter, StepId.START, ErrorKind.START, error)
            self._cleanup(record, run)
            return
        self._passed(result, reporter, StepId.START, "Service running", percent=95)

        reporter.begin(StepId.COMMIT, f"Registering {record.site_name}")
        try:
            run.executor.run(
                StepId.COMMIT, f"register {record.site_name}", lambda: context.registry.save(record), simulated=None
            )
        except (StateRegistryError, OSError) as exc:
            self._failed(
                result, reporter, StepId.COMMIT, ErrorKind.UNEXPECTED, f"Could not register {record.site_name}: {exc}"
            )
            self._cleanup(record, run)
            return
        run.executor.run(
            StepId.COMMIT,
            "record install history",
            lambda: context.registry.record_history(
                record.site_name, {"action": "install", "to_version": record.version}
            ),
            simulated=None,
        )
        result.success = True
        result.record = record.copy()
        result.message = f"Installed {record.site_name} {record.version} at {record.install_path}."
        self._passed(result, reporter, StepId.COMMIT, result.message, percent=100)

    def _resolve_package(self, request: InstallRequest, run: _InstallRun) -> AcquiredPackage | None:
        reporter = run.reporter
        result = run.result
        packages = self.context.packages

        if request.package is not None:
            self._skipped(result, reporter, StepId.CHECK_REMOTE, f"Using package {request.package}")
            version = request.version or _version_from_name(request.package.name)
            if version is None or parse_version(version) is None:
                self._failed(
                    result,
                    reporter,
                    StepId.ACQUIRE_PACKAGE,
                    ErrorKind.VALIDATION,
                    f"Cannot tell the version of package {request.package.name}; pass it explicitly.",
                )
                return None
            if not request.package.is_file():
                self._failed(
                    result,
                    reporter,
                    StepId.ACQUIRE_PACKAGE,
                    ErrorKind.ACQUISITION,
                    f"Package {request.package} does not exist.",
                )
                return None
            package = AcquiredPackage(path=request.package, version=normalize_version(version), source="local")
            self._passed(result, reporter, StepId.ACQUIRE_PACKAGE, f"Package {package.path.name} (local)", percent=40)
            return package

        reporter.begin(StepId.CHECK_REMOTE, "Looking up the latest release")
        release: ReleaseInfo | None = None
        try:
            release = self.context.releases.get_latest_release()
        except ReleaseError as exc:
            newest = packages.newest_local()
            if newest is None:
                self._failed(
                    result, reporter, StepId.CHECK_REMOTE, ErrorKind.ACQUISITION, f"Update check failed: {exc}"
                )
                return None
            self._warned(result, reporter, StepId.CHECK_REMOTE, f"Release lookup failed ({exc}); using local package.")
            self._skipped(result, reporter, StepId.CHECK_REMOTE, "offline")
            package = AcquiredPackage(path=newest.path, version=str(newest.version), source="local")
            self._passed(result, reporter, StepId.ACQUIRE_PACKAGE, f"Package {newest.path.name} (local)", percent=40)
            return package
        self._passed(result, reporter, StepId.CHECK_REMOTE, f"Latest release is {release.version}", percent=10)

        reporter.begin(StepId.ACQUIRE_PACKAGE, f"Acquiring package for {release.version}")
        callback = reporter.download_callback(
            StepId.ACQUIRE_PACKAGE, start=10, end=40, interval=self.context.policy.progress_interval
        )
        stand_in = AcquiredPackage(
            path=packages.cache_path(release.version, "simulated.zip"), version=release.version, source="simulated"
        )
        try:
            package = run.executor.run(
                StepId.ACQUIRE_PACKAGE,
                f"acquire package for {release.version}",
                lambda: packages.acquire(release, on_progress=callback),
                simulated=stand_in,
            )
        except PackageError as exc:
            self._failed(result, reporter, StepId.ACQUIRE_PACKAGE, ErrorKind.ACQUISITION, str(exc))
            return None
        self._passed(
            result, reporter, StepId.ACQUIRE_PACKAGE, f"Package {package.path.name} ({package.source})", percent=40
        )
        return package

    def _copy_package(self, package: AcquiredPackage, install_path: Path) -> list[str]:
        work_dir = self.context.work_dir
        if work_dir is not None:
            work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=work_dir, prefix=".extract-") as scratch:
            app_dir = self.context.packages.extract(package.path, Path(scratch))
            return copy_tree_files(app_dir, install_path)

    def _cancelled(self, record: InstanceRecord, run: _InstallRun, step: StepId) -> bool:
        if run.cancel is None or not run.cancel.cancelled:
            return False
        self._failed(
            run.result,
            run.reporter,
            step,
            ErrorKind.CANCELLED,
            f"Installation of {record.site_name} cancelled before {step.value}.",
        )
        self._cleanup(record, run)
        return True

    def _cleanup(self, record: InstanceRecord, run: _InstallRun) -> None:
        """Remove whatever this run created for *record*."""
        context = self.context
        name = record.site_name
        actions = []
        if run.provisioned:
            actions.append((f"remove service for {name}", lambda: context.service.remove(name)))
            actions.append((f"remove site for {name}", lambda: context.site.remove(name)))
        if run.created_path:
            actions.append(
                (f"remove {record.install_path}", lambda: shutil.rmtree(record.install_path, ignore_errors=True))
            )
        else:
            actions.append((f"empty {record.install_path}", lambda: _empty_directory(record.install_path)))
        for description, action in actions:
            try:
                run.executor.run(StepId.COMMIT, description, action, simulated=None)
            except HOST_ERRORS as exc:
                self._warned(run.result, run.reporter, StepId.COMMIT, f"Cleanup could not {description}: {exc}")

    # Reconfigure ---------------------------------------------------------
    def reconfigure(
        self,
        site_name: str,
        *,
        mode: ExecutionMode = ExecutionMode.REAL,
        reporter: ProgressReporter | None = None,
    ) -> InstallResult:
        """Re-apply app pool, site, service and app configuration, then start."""
        reporter = reporter if reporter is not None else ProgressReporter(RECONFIGURE_STEPS)
        result = InstallResult(success=False, message="")
        executor = executor_for(mode)
        try:
            with self._locked(site_name):
                self._reconfigure_instance(site_name, executor, reporter, result)
        except LockTimeoutError as exc:
            self._failed(result, reporter, StepId.DETECT, ErrorKind.LOCKED, f"Instance '{site_name}' is busy: {exc}")
        return result

    def _reconfigure_instance(
        self,
        site_name: str,
        executor: StepExecutor,
        reporter: ProgressReporter,
        result: InstallResult,
    ) -> None:
        reporter.begin(StepId.DETECT, f"Looking up {site_name}")
        record = self.context.registry.get(site_name)
        if record is None:
            self._failed(result, reporter, StepId.DETECT, ErrorKind.DETECTION, f"Instance '{site_name}' not found.")
            return
        result.record = record.copy()
        self._passed(result, reporter, StepId.DETECT, f"{site_name} is at version {record.version}", percent=10)

        reporter.begin(StepId.RECONFIGURE, "Reconfiguring site, app pool and service")
        problems = self._reconfigure(record, executor)
        for problem in problems:
            self._warned(result, reporter, StepId.RECONFIGURE, problem)
        self._passed(
            result,
            reporter,
            StepId.RECONFIGURE,
            f"{len(problems)} problem(s) reported" if problems else "Bindings up to date",
            percent=60,
            status=StepStatus.WARNING if problems else StepStatus.OK,
        )

        reporter.begin(StepId.START, f"Starting {site_name}")
        error = self._start(record, executor)
        if error is not None:
            self._failed(result, reporter, StepId.START, ErrorKind.START, error)
            result.warnings.append(error)
            return
        self._passed(result, reporter, StepId.START, "Service running", percent=90)

        reporter.begin(StepId.COMMIT, "Recording reconfiguration")
        executor.run(
            StepId.COMMIT,
            "record reconfigure history",
            lambda: self.context.registry.record_history(site_name, {"action": "reconfigure"}),
            simulated=None,
        )
        result.success = True
        result.message = f"Reconfigured {site_name}."
        if problems:
            result.message += f" {len(problems)} problem(s) need attention."
        self._passed(result, reporter, StepId.COMMIT, result.message, percent=100)


def _version_from_name(name: str) -> str | None:
    match = _PACKAGE_VERSION_RE.search(name)
    return match.group(1) if match else None


def _empty_directory(root: Path) -> None:
    if not root.is_dir():
        return
    for child in root.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


__all__ = ["InstallOrchestrator", "InstallRequest", "validate_site_name"]
