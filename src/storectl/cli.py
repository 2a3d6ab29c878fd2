"""Command-line interface for storectl.

Every lifecycle command builds (or reuses) a :class:`RuntimeContext`, opens a
structured operation scope and hands the work to an orchestrator running on a
worker thread. The command thread only drains progress events from a queue
and renders them with Rich. Orchestrators return result values; this module
maps failed results onto :class:`~storectl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import queue
import textwrap
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.table import Table

from . import __version__
from .backups import BackupError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import BackupRecord, ErrorKind, OperationResult, StepStatus
from .orchestration import (
    ExecutionMode,
    InstallOrchestrator,
    InstallRequest,
    OrchestrationContext,
    RepairOrchestrator,
    UninstallOptions,
    UninstallOrchestrator,
    UpgradeOrchestrator,
    executor_for,
)
from .orchestration.base import HOST_ERRORS
from .orchestration.executor import StepExecutor
from .progress import (
    INSTALL_STEPS,
    RECONFIGURE_STEPS,
    REPAIR_STEPS,
    UNINSTALL_STEPS,
    UPGRADE_STEPS,
    CancellationToken,
    DisplayState,
    ProgressEvent,
    ProgressReporter,
    StepId,
)
from .state import StateRegistryError

console = Console()

ResultT = TypeVar("ResultT", bound=OperationResult)

_EXIT_CODES: dict[ErrorKind, ExitCode] = {
    ErrorKind.DETECTION: ExitCode.VALIDATION,
    ErrorKind.VALIDATION: ExitCode.VALIDATION,
    ErrorKind.ACQUISITION: ExitCode.ENVIRONMENT,
    ErrorKind.BACKUP: ExitCode.ENVIRONMENT,
    ErrorKind.LOCKED: ExitCode.ENVIRONMENT,
    ErrorKind.STOP: ExitCode.PROVIDER,
    ErrorKind.MIGRATION: ExitCode.PROVIDER,
    ErrorKind.RECONFIGURATION: ExitCode.PROVIDER,
    ErrorKind.START: ExitCode.PROVIDER,
    ErrorKind.REPAIR: ExitCode.PROVIDER,
    ErrorKind.CANCELLED: ExitCode.FAILURE,
    ErrorKind.UNEXPECTED: ExitCode.FAILURE,
}

_STATUS_STYLES: dict[StepStatus, str] = {
    StepStatus.OK: "green",
    StepStatus.FIXED: "cyan",
    StepStatus.WARNING: "yellow",
    StepStatus.ERROR: "red",
    StepStatus.SKIPPED: "dim",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Install, upgrade, repair and remove self-hosted EcommerceStarter
        storefront instances.

        Lifecycle commands accept --simulate to walk every step without
        touching the host.
        """
    ).strip(),
)
instances_app = typer.Typer(help="Inspect registered storefront instances.")
backups_app = typer.Typer(help="List and restore pre-upgrade backups.")
app.add_typer(instances_app, name="instances")
app.add_typer(backups_app, name="backups")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to storectl's YAML config file.",
)

SIMULATE_OPTION = typer.Option(
    False,
    "--simulate",
    help="Walk every step and report what would change without touching the host.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of rendering progress.",
)


@dataclass(slots=True)
class RuntimeContext:
    """Objects shared by every command of one CLI invocation."""

    config: AppConfig | None
    logger: StructuredLogger
    orchestration: OrchestrationContext


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        orchestration=OrchestrationContext.from_config(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the storectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"storectl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# Helpers ---------------------------------------------------------------
def _mode(simulate: bool) -> ExecutionMode:
    return ExecutionMode.SIMULATED if simulate else ExecutionMode.REAL


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def exit_code_for(result: OperationResult) -> ExitCode:
    """Return the exit code a finished *result* maps to."""
    if result.success:
        return ExitCode.OK
    if result.error_kind is None:
        return ExitCode.FAILURE
    return _EXIT_CODES.get(result.error_kind, ExitCode.FAILURE)


def _render_event(progress: Progress, task: TaskID, title: str, event: ProgressEvent) -> None:
    progress.update(task, completed=event.percent, description=f"{title}: {escape(event.message)}")
    label = event.step.value.replace("_", " ")
    if event.level == "warning":
        progress.console.print(f"  [yellow]! {label}:[/yellow] {escape(event.message)}")
    elif event.state is DisplayState.FAILED:
        progress.console.print(f"  [red]x {label}:[/red] {escape(event.message)}")
    elif event.state is DisplayState.SKIPPED:
        progress.console.print(f"  [dim]- {label}: {escape(event.message)}[/dim]")
    elif event.state is DisplayState.DONE and event.level == "info":
        progress.console.print(f"  [green]✓ {label}:[/green] {escape(event.message)}")


def _run_with_progress(
    title: str,
    steps: Sequence[StepId],
    work: Callable[[ProgressReporter, CancellationToken], ResultT],
    *,
    quiet: bool = False,
) -> ResultT:
    """Run *work* on a worker thread and render its progress events here.

    Ctrl-C requests cooperative cancellation; the orchestrator decides
    whether it can still stop cleanly.
    """
    events: queue.Queue[ProgressEvent | None] = queue.Queue()
    reporter = ProgressReporter(steps, observers=[events.put])
    cancel = CancellationToken()
    outcome: list[ResultT] = []
    failure: list[BaseException] = []

    def _worker() -> None:
        try:
            outcome.append(work(reporter, cancel))
        except BaseException as exc:  # noqa: BLE001 - re-raised on the command thread
            failure.append(exc)
        finally:
            events.put(None)

    thread = threading.Thread(target=_worker, name=f"storectl-{title}", daemon=True)
    progress = Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
        disable=quiet,
    )
    with progress:
        task = progress.add_task(title, total=100)
        thread.start()
        while True:
            try:
                event = events.get(timeout=0.1)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                if not cancel.cancelled:
                    cancel.cancel()
                    progress.console.print("[yellow]Cancelling after the current step...[/yellow]")
                continue
            if event is None:
                break
            if not quiet:
                _render_event(progress, task, title, event)
    thread.join()
    if failure:
        raise failure[0]
    return outcome[0]


def _report_result(
    op: OperationScope,
    result: OperationResult,
    *,
    json_output: bool,
    changed: int = 0,
    context: dict[str, object] | None = None,
) -> None:
    """Print *result*, close *op* and exit non-zero when it failed."""
    backups = [str(result.backup_path)] if result.backup_path else None
    payload = {**result.to_dict(), **(context or {})}
    for item in result.steps:
        op.add_step(item.step, status=item.status.value, detail=item.detail or None)

    if json_output:
        console.print_json(data=payload)
    elif result.success:
        console.print(f"[green]{escape(result.message)}[/green]")
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    else:
        console.print(f"[red]{escape(result.message)}[/red]")
        if result.backup_path:
            console.print(f"Backup retained at {result.backup_path}")

    if result.success:
        if result.warnings:
            op.warning(result.message, warnings=result.warnings, changed=changed, backups=backups, context=context)
        else:
            op.success(result.message, changed=changed, backups=backups, context=context)
        return

    rc = int(exit_code_for(result))
    op.error(
        result.error_message or result.message,
        rc=rc,
        backups=backups,
        context={"error_kind": result.error_kind.value if result.error_kind else None, **(context or {})},
    )
    raise typer.Exit(code=rc)


# Lifecycle commands ----------------------------------------------------
@app.command("install")
def install(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Unique name of the new storefront."),
    path: Path = typer.Option(..., "--path", file_okay=False, help="Directory to install into."),
    port: int = typer.Option(..., "--port", help="Local port the application listens on."),
    database_name: str = typer.Option("", "--database-name", help="Database name (defaults to the site name)."),
    database_server: str | None = typer.Option(None, "--database-server", help="Database server host."),
    package: Path | None = typer.Option(
        None,
        "--package",
        dir_okay=False,
        help="Install from this local package instead of the latest release.",
    ),
    package_version: str | None = typer.Option(
        None,
        "--package-version",
        help="Version of --package when its file name carries none.",
    ),
    simulate: bool = SIMULATE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install a new storefront instance."""
    runtime = _get_runtime(ctx)
    request = InstallRequest(
        site_name=site_name,
        install_path=path,
        port=port,
        database_name=database_name,
        database_server=database_server,
        package=package,
        version=package_version,
    )
    orchestrator = InstallOrchestrator(runtime.orchestration)
    with runtime.logger.operation(
        "install",
        args={"path": path, "port": port, "package": package, "simulate": simulate},
        target={"kind": "instance", "name": site_name},
    ) as op:
        result = _run_with_progress(
            f"install {site_name}",
            INSTALL_STEPS,
            lambda reporter, cancel: orchestrator.install(
                request, mode=_mode(simulate), reporter=reporter, cancel=cancel
            ),
            quiet=json_output,
        )
        _report_result(op, result, json_output=json_output, changed=0 if simulate else 1)


@app.command("upgrade")
def upgrade(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Instance to upgrade."),
    simulate: bool = SIMULATE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Upgrade an instance to the newest release, rolling back failed migrations."""
    runtime = _get_runtime(ctx)
    orchestrator = UpgradeOrchestrator(runtime.orchestration)
    with runtime.logger.operation(
        "upgrade",
        args={"simulate": simulate},
        target={"kind": "instance", "name": site_name},
    ) as op:
        result = _run_with_progress(
            f"upgrade {site_name}",
            UPGRADE_STEPS,
            lambda reporter, cancel: orchestrator.upgrade(
                site_name, mode=_mode(simulate), reporter=reporter, cancel=cancel
            ),
            quiet=json_output,
        )
        _report_result(
            op,
            result,
            json_output=json_output,
            changed=0 if simulate or result.up_to_date else 1,
            context={
                "from_version": result.from_version,
                "to_version": result.to_version,
                "up_to_date": result.up_to_date,
                "rolled_back": result.rolled_back,
            },
        )


@app.command("check-updates")
def check_updates(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Instance to check."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a newer release than the installed one exists."""
    runtime = _get_runtime(ctx)
    orchestrator = UpgradeOrchestrator(runtime.orchestration)
    with runtime.logger.operation(
        "check-updates",
        args={"json": json_output},
        target={"kind": "instance", "name": site_name},
    ) as op:
        result = orchestrator.check(site_name)
        _report_result(
            op,
            result,
            json_output=json_output,
            context={
                "from_version": result.from_version,
                "to_version": result.to_version,
                "up_to_date": result.up_to_date,
            },
        )


@app.command("reconfigure")
def reconfigure(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Instance to reconfigure."),
    simulate: bool = SIMULATE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Re-apply the site, app pool, service and app configuration."""
    runtime = _get_runtime(ctx)
    orchestrator = InstallOrchestrator(runtime.orchestration)
    with runtime.logger.operation(
        "reconfigure",
        args={"simulate": simulate},
        target={"kind": "instance", "name": site_name},
    ) as op:
        result = _run_with_progress(
            f"reconfigure {site_name}",
            RECONFIGURE_STEPS,
            lambda reporter, _cancel: orchestrator.reconfigure(
                site_name, mode=_mode(simulate), reporter=reporter
            ),
            quiet=json_output,
        )
        _report_result(op, result, json_output=json_output, changed=0 if simulate else 1)


@app.command("repair")
def repair(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Instance to repair."),
    check_only: bool = typer.Option(False, "--check-only", help="Report problems without fixing them."),
    simulate: bool = SIMULATE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Verify files, site, service, configuration and database; fix what is broken."""
    runtime = _get_runtime(ctx)
    orchestrator = RepairOrchestrator(runtime.orchestration)
    with runtime.logger.operation(
        "repair",
        args={"check_only": check_only, "simulate": simulate},
        target={"kind": "instance", "name": site_name},
    ) as op:
        result = _run_with_progress(
            f"repair {site_name}",
            REPAIR_STEPS,
            lambda reporter, _cancel: orchestrator.repair(
                site_name, check_only=check_only, mode=_mode(simulate), reporter=reporter
            ),
            quiet=json_output,
        )
        if not json_output and result.steps:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Step", style="bold")
            table.add_column("Status")
            table.add_column("Detail")
            for item in result.steps:
                style = _STATUS_STYLES[item.status]
                table.add_row(item.step, f"[{style}]{item.status.value}[/{style}]", item.detail)
            console.print(table)
        fixed = sum(1 for item in result.steps if item.status is StepStatus.FIXED)
        _report_result(op, result, json_output=json_output, changed=0 if simulate else fixed)


@app.command("uninstall")
def uninstall(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Instance to remove."),
    remove_database: bool = typer.Option(
        False,
        "--remove-database",
        help="Also drop the instance database (needs --yes-drop-database).",
    ),
    yes_drop_database: bool = typer.Option(
        False,
        "--yes-drop-database",
        help="Confirm that the database should really be dropped.",
    ),
    purge_user_data: bool = typer.Option(
        False,
        "--purge-user-data",
        help="Delete uploads and logs inside the install path too.",
    ),
    simulate: bool = SIMULATE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove an instance; its database is kept unless dropping it is confirmed."""
    runtime = _get_runtime(ctx)
    options = UninstallOptions(
        remove_database=remove_database,
        confirm_database_drop=yes_drop_database,
        keep_user_data=not purge_user_data,
    )
    orchestrator = UninstallOrchestrator(runtime.orchestration)
    with runtime.logger.operation(
        "uninstall",
        args={
            "remove_database": remove_database,
            "yes_drop_database": yes_drop_database,
            "purge_user_data": purge_user_data,
            "simulate": simulate,
        },
        target={"kind": "instance", "name": site_name},
    ) as op:
        result = _run_with_progress(
            f"uninstall {site_name}",
            UNINSTALL_STEPS,
            lambda reporter, _cancel: orchestrator.uninstall(
                site_name, options=options, mode=_mode(simulate), reporter=reporter
            ),
            quiet=json_output,
        )
        _report_result(
            op,
            result,
            json_output=json_output,
            changed=0 if simulate else 1,
            context={
                "database_dropped": result.database_dropped,
                "kept_paths": [str(item) for item in result.kept_paths],
            },
        )


# Instances -------------------------------------------------------------
@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit instance details as JSON."),
) -> None:
    """List registered instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            records = runtime.orchestration.registry.list_instances()
        except StateRegistryError as exc:
            _command_error(op, f"Failed to read the registry: {exc}", rc=int(ExitCode.ENVIRONMENT))

        if json_output:
            console.print_json(data={"instances": [record.to_dict() for record in records]})
            op.success("Reported instance list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Site", style="bold")
        table.add_column("Version")
        table.add_column("Port")
        table.add_column("Path")
        table.add_column("Health")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            health = "[green]healthy[/green]" if record.is_healthy else f"[red]{len(record.issues)} issue(s)[/red]"
            table.add_row(record.site_name, record.version, str(record.port), str(record.install_path), health)
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    site_name: str = typer.Argument(..., help="Instance to inspect."),
    json_output: bool = typer.Option(False, "--json", help="Emit instance details as JSON."),
) -> None:
    """Show one instance with its recent history."""
    runtime = _get_runtime(ctx)
    registry = runtime.orchestration.registry
    with runtime.logger.operation(
        "instances show",
        args={"json": json_output},
        target={"kind": "instance", "name": site_name},
    ) as op:
        try:
            record = registry.get(site_name)
            history = registry.history(site_name)
        except StateRegistryError as exc:
            _command_error(op, f"Failed to read the registry: {exc}", rc=int(ExitCode.ENVIRONMENT))
        if record is None:
            _command_error(op, f"Instance '{site_name}' not found.")

        if json_output:
            console.print_json(data={"instance": record.to_dict(), "history": history})
            op.success("Reported instance details (JSON).", changed=0)
            return

        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in record.to_dict().items():
            if key == "issues":
                value = "; ".join(record.issues) or "-"
            table.add_row(key, str(value))
        console.print(table)
        if history:
            console.print("[bold]History[/bold]")
            for entry in history[-10:]:
                console.print(f"  {entry.get('recorded_at', '')}  {entry.get('action', '')}  {_history_detail(entry)}")
        op.success("Reported instance details.", changed=0)


def _history_detail(entry: dict[str, object]) -> str:
    from_version = entry.get("from_version")
    to_version = entry.get("to_version")
    if from_version and to_version:
        return f"{from_version} -> {to_version}"
    return str(to_version or from_version or "")


# Backups ---------------------------------------------------------------
@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    site_name: str | None = typer.Option(
        None,
        "--instance",
        "-i",
        help="Filter backups for a specific instance.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit backup details as JSON."),
) -> None:
    """List known backups from the index."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups list",
        args={"instance": site_name, "json": json_output},
        target={"kind": "backup", "scope": "index"},
    ) as op:
        try:
            entries = runtime.orchestration.backups.list_backups(site_name)
        except BackupError as exc:
            _command_error(op, f"Failed to read backup index: {exc}")

        entries.sort(key=lambda item: str(item.get("created_at", "")), reverse=True)

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Instance")
        table.add_column("Version")
        table.add_column("Created At")
        table.add_column("Files")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("instance", "")),
                str(entry.get("version", "")),
                str(entry.get("created_at", "")),
                str(entry.get("file_count", "")),
                str(entry.get("status", "")),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup identifier to restore."),
    simulate: bool = SIMULATE_OPTION,
) -> None:
    """Stop the instance, restore its files and record from a backup, then start it."""
    runtime = _get_runtime(ctx)
    context = runtime.orchestration
    with runtime.logger.operation(
        "backups restore",
        args={"simulate": simulate},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        try:
            record = context.backups.load(backup_id)
        except BackupError as exc:
            _command_error(op, str(exc))
        name = record.site_name
        executor = executor_for(_mode(simulate))
        locks = context.locks
        try:
            if locks is None:
                restored = _restore(context, record, executor, op)
            else:
                with locks.instance_lock(name) as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    restored = _restore(context, record, executor, op)
        except LockTimeoutError as exc:
            _command_error(op, f"Instance '{name}' is busy: {exc}", rc=int(ExitCode.ENVIRONMENT))
        except HOST_ERRORS as exc:
            _command_error(op, f"Restore of {name} failed: {exc}", rc=int(ExitCode.PROVIDER))
        if not restored:
            _command_error(op, f"Restore of {name} from {backup_id} failed.", rc=int(ExitCode.ENVIRONMENT))

        prefix = "Would restore" if simulate else "Restored"
        console.print(f"[green]{prefix} {name} to version {record.instance_snapshot.version} from {backup_id}.[/green]")
        op.success(
            f"{prefix} {name} from {backup_id}.",
            changed=0 if simulate else 1,
            backups=[backup_id],
            context={"version": record.instance_snapshot.version},
        )


def _restore(
    context: OrchestrationContext,
    record: BackupRecord,
    executor: StepExecutor,
    op: OperationScope,
) -> bool:
    name = record.site_name
    executor.run(StepId.STOP, f"stop service for {name}", lambda: context.service.stop(name), simulated=None)
    op.add_step("service.stop", detail=name)
    restored = executor.run(
        StepId.ROLLBACK,
        f"restore {name} from {record.backup_id}",
        lambda: context.backups.restore(record),
        simulated=True,
    )
    op.add_step("backup.restore", status="success" if restored else "error", detail=record.backup_id)
    executor.run(
        StepId.START,
        f"start service for {name}",
        lambda: context.service.ensure_running(name, timeout=context.start_timeout),
        simulated=None,
    )
    op.add_step("service.start", detail=name)
    return bool(restored)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "exit_code_for", "main"]
