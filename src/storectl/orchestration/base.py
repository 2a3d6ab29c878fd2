"""Shared wiring and helpers for the lifecycle orchestrators."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import TemplateError

from ..backups import BackupManager, BackupsRegistry
from ..config import AppConfig, SystemdConfig, UpgradeConfig
from ..locking import LockManager
from ..models import ErrorKind, InstanceRecord, OperationResult, StepOutcome, StepStatus
from ..packages import PackageStore
from ..progress import ProgressReporter, StepId
from ..providers.base import MigrationRunner, ReleaseSource, ServiceController, SitePublisher
from ..providers.database import DatabaseError, DatabaseProvider
from ..providers.nginx import NginxError, NginxProvider
from ..providers.releases import ReleaseProvider
from ..providers.systemd import SystemdError, SystemdProvider
from ..state import InstallationRegistry
from ..templates import TemplateEngine
from .executor import StepExecutor

LOGGER = logging.getLogger(__name__)

APP_CONFIG_NAME = "appsettings.json"
APP_CONFIG_TEMPLATE = "app/appsettings.json.j2"
DEFAULT_UNIT_DIR = Path("/etc/systemd/system")

# Failures a host action may raise that orchestrators turn into results.
HOST_ERRORS: tuple[type[BaseException], ...] = (
    SystemdError,
    NginxError,
    DatabaseError,
    TemplateError,
    OSError,
)


@dataclass(slots=True)
class OrchestrationContext:
    """Everything an orchestrator needs to act on one host."""

    registry: InstallationRegistry
    backups: BackupManager
    packages: PackageStore
    releases: ReleaseSource
    service: ServiceController
    site: SitePublisher
    database: MigrationRunner
    templates: TemplateEngine
    locks: LockManager | None = None
    policy: UpgradeConfig = field(default_factory=UpgradeConfig)
    exec_start: str = SystemdConfig.exec_start
    start_timeout: float = 30.0
    payload_dir: Path | None = None
    work_dir: Path | None = None
    database_server: str = "localhost"

    @classmethod
    def from_config(cls, config: AppConfig) -> OrchestrationContext:
        """Build the real systemd + nginx providers described by *config*."""
        templates = TemplateEngine.with_overrides(config.templates_dir)
        registry = InstallationRegistry.at(config.registry_dir)
        backups = BackupManager(
            BackupsRegistry(config.backups.root, config.backups.index),
            registry,
            protected_paths=config.upgrade.protected_paths,
        )
        releases = ReleaseProvider(
            owner=config.release.owner,
            repo=config.release.repo,
            api_url=config.release.api_url,
            token=config.release.token,
            timeout=config.release.timeout,
        )
        systemd = config.systemd
        service = SystemdProvider(
            templates=templates,
            systemd_dir=systemd.unit_dir or DEFAULT_UNIT_DIR,
            systemctl_bin=systemd.systemctl_bin,
            service_user=systemd.service_user,
            command_timeout=systemd.command_timeout,
            start_timeout=systemd.start_timeout,
        )
        nginx = config.nginx
        site = NginxProvider(
            templates=templates,
            sites_available=nginx.sites_available,
            sites_enabled=nginx.sites_enabled,
            upstream_dir=nginx.upstream_dir,
            nginx_bin=nginx.nginx_bin,
            command_timeout=nginx.command_timeout,
        )
        database = DatabaseProvider(
            migrate_command=config.database.migrate_command,
            check_command=config.database.check_command,
            drop_command=config.database.drop_command,
            timeout=config.database.timeout,
        )
        return cls(
            registry=registry,
            backups=backups,
            packages=PackageStore(
                config.packages_dir,
                config.cache_dir,
                patterns=config.release.asset_patterns,
                releases=releases,
            ),
            releases=releases,
            service=service,
            site=site,
            database=database,
            templates=templates,
            locks=LockManager(config.runtime_dir, default_timeout=config.lock_timeout),
            policy=config.upgrade,
            exec_start=systemd.exec_start,
            start_timeout=systemd.start_timeout,
            payload_dir=config.payload_dir,
            work_dir=config.cache_dir,
            database_server=config.database.default_server,
        )

    # Derived values ------------------------------------------------------
    def exec_start_for(self, record: InstanceRecord) -> str:
        """Return the service command line for *record*."""
        return self.exec_start.format(
            install_path=record.install_path,
            port=record.port,
            site_name=record.site_name,
        )

    def app_config_path(self, record: InstanceRecord) -> Path:
        """Return the application configuration file of *record*."""
        return record.install_path / APP_CONFIG_NAME

    def app_config_context(self, record: InstanceRecord) -> dict[str, object]:
        """Return the template context for the application configuration."""
        return {
            "site_name": record.site_name,
            "version": record.version,
            "port": record.port,
            "database_server": record.database_server,
            "database_name": record.database_name or record.site_name,
        }

    def render_app_config(self, record: InstanceRecord) -> bool:
        """Write the application configuration; return ``True`` when it changed."""
        return self.templates.render_to_path(
            APP_CONFIG_TEMPLATE,
            self.app_config_path(record),
            self.app_config_context(record),
            mode=0o640,
        )


class Orchestrator:
    """Common behaviour of the lifecycle orchestrators."""

    def __init__(self, context: OrchestrationContext) -> None:
        """Act on the host described by *context*."""
        self.context = context

    @contextmanager
    def _locked(self, site_name: str, *, registry_wide: bool = False) -> Iterator[None]:
        locks = self.context.locks
        if locks is None:
            guard: AbstractContextManager[object] = nullcontext()
        elif registry_wide:
            guard = locks.mutate_instances([site_name])
        else:
            guard = locks.instance_lock(site_name)
        with guard:
            yield

    # Result helpers ------------------------------------------------------
    @staticmethod
    def _passed(
        result: OperationResult,
        reporter: ProgressReporter,
        step: StepId,
        detail: str,
        *,
        percent: float | None = None,
        status: StepStatus = StepStatus.OK,
    ) -> None:
        result.steps.append(StepOutcome(step=step.value, status=status, detail=detail))
        reporter.complete(step, detail, percent=percent)

    @staticmethod
    def _skipped(result: OperationResult, reporter: ProgressReporter, step: StepId, detail: str) -> None:
        result.steps.append(StepOutcome(step=step.value, status=StepStatus.SKIPPED, detail=detail))
        reporter.skip(step, detail)

    @staticmethod
    def _warned(result: OperationResult, reporter: ProgressReporter, step: StepId, message: str) -> None:
        LOGGER.warning("%s: %s", step.value, message)
        result.warnings.append(message)
        reporter.warn(step, message)

    @staticmethod
    def _failed(
        result: OperationResult,
        reporter: ProgressReporter,
        step: StepId,
        kind: ErrorKind,
        message: str,
    ) -> OperationResult:
        LOGGER.error("%s failed: %s", step.value, message)
        result.success = False
        result.error_kind = kind
        result.error_message = message
        result.message = message
        result.steps.append(StepOutcome(step=step.value, status=StepStatus.ERROR, detail=message))
        reporter.fail(step, message)
        return result

    # Shared steps --------------------------------------------------------
    def _reconfigure(
        self,
        record: InstanceRecord,
        executor: StepExecutor,
        *,
        step: StepId = StepId.RECONFIGURE,
    ) -> list[str]:
        """Ensure app pool, site, service unit and app configuration; return problems."""
        context = self.context
        name = record.site_name
        path = record.install_path
        actions = (
            ("app pool", lambda: context.site.ensure_app_pool(name, record.port)),
            ("site", lambda: context.site.ensure_site(name, path, record.port)),
            (
                "service",
                lambda: context.service.ensure_installed(name, context.exec_start_for(record), path),
            ),
            ("app configuration", lambda: context.render_app_config(record)),
        )
        problems: list[str] = []
        for label, action in actions:
            try:
                executor.run(step, f"ensure {label} for {name}", action, simulated=False)
            except HOST_ERRORS as exc:
                problems.append(f"Could not reconfigure {label}: {exc}")
        return problems

    def _start(self, record: InstanceRecord, executor: StepExecutor) -> str | None:
        """Start service and site and wait for running; return an error message or ``None``."""
        context = self.context
        name = record.site_name
        try:
            executor.run(
                StepId.START,
                f"start service for {name}",
                lambda: context.service.ensure_running(name, timeout=context.start_timeout),
                simulated=True,
            )
            executor.run(StepId.START, f"enable site for {name}", lambda: context.site.enable(name), simulated=None)
            running = executor.run(
                StepId.START,
                f"verify service for {name}",
                lambda: context.service.is_running(name),
                simulated=True,
            )
        except HOST_ERRORS as exc:
            return f"Start failed: {exc}"
        if not running:
            return f"Service for {name} did not report running within {context.start_timeout:.0f}s."
        return None


__all__ = [
    "APP_CONFIG_NAME",
    "APP_CONFIG_TEMPLATE",
    "HOST_ERRORS",
    "OrchestrationContext",
    "Orchestrator",
]
