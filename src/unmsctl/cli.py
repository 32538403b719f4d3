"""Typer-powered command line interface for ``unmsctl``.

``main()`` is the console entry point. It lets Typer report usage errors on
stderr as usual, then folds every non-zero exit status into 1.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupRetentionSweeper, PostgresBackupRecords, SweepReport
from .certificates import CertificateInspector, CertificateRefresher
from .conf_store import ConfigStore
from .config import AppConfig, ConfigError, load_config
from .dispatcher import RESTART_REMINDER, CommandOutcome, MaintenanceDispatcher
from .errors import NotFoundError, UnmsctlError
from .exit_codes import ExitCode
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .providers import ComposeProvider
from .settings import SettingsBlobStore
from .stack import RuntimeStateProbe

CLI_NAME = "unmsctl"

console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to unmsctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help=textwrap.dedent(
        """
        UNMS stack maintenance CLI.

        Starts and stops the UNMS containers and runs maintenance tasks that
        need the stack in a specific state. Commands that change container
        configuration do not restart UNMS; run `unmsctl restart` afterwards.
        """
    ).strip(),
)


@dataclass(frozen=True)
class GlobalOptions:
    """Root options remembered until a command needs the runtime."""

    config_file: Path | None = None
    lock_timeout: float | None = None


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    engine: ComposeProvider
    probe: RuntimeStateProbe
    config_store: ConfigStore
    settings: SettingsBlobStore
    inspector: CertificateInspector
    dispatcher: MaintenanceDispatcher


def _build_runtime(config: AppConfig) -> RuntimeContext:
    engine = ComposeProvider(
        compose_file=config.compose.file,
        project=config.compose.project,
        command=config.compose.command,
    )
    probe = RuntimeStateProbe(engine)
    config_store = ConfigStore(config.conf_file, config.compose.file)
    settings = SettingsBlobStore(
        engine,
        service=config.services.redis,
        key=config.redis.settings_key,
    )
    refresher = CertificateRefresher(
        probe,
        settings,
        config_store,
        engine,
        proxy_service=config.services.proxy,
        refresh_command=config.certificates.refresh_command,
    )
    records = PostgresBackupRecords(
        engine,
        service=config.services.postgres,
        user=config.postgres.user,
        database=config.postgres.database,
    )
    sweeper = BackupRetentionSweeper(
        config.backups.root,
        records,
        probe,
        keep=config.backups.keep,
        batch_size=config.backups.batch_size,
    )
    dispatcher = MaintenanceDispatcher(
        engine,
        probe,
        config_store,
        settings,
        refresher,
        sweeper,
        services=config.services,
        redis=config.redis,
    )
    return RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        engine=engine,
        probe=probe,
        config_store=config_store,
        settings=settings,
        inspector=CertificateInspector(config.certificates.dir),
        dispatcher=dispatcher,
    )


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(handler, RichHandler) for handler in root.handlers):
        root.addHandler(RichHandler(console=err_console, show_path=False))


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
        err_console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    runtime = _build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    options = runtime if isinstance(runtime, GlobalOptions) else GlobalOptions()
    return _ensure_runtime(ctx, options.config_file, options.lock_timeout)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the unmsctl version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine commands and other diagnostics to stderr.",
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
        console.print(f"{CLI_NAME} {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _configure_logging(verbose)
    # Built lazily by _get_runtime; subcommand help must not load the config.
    ctx.obj = GlobalOptions(config_file=config_file, lock_timeout=lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    remediation: str | None = None,
    rc: int = ExitCode.FAILURE,
) -> NoReturn:
    """Emit a structured error on stderr and terminate the command."""
    err_console.print(f"[red]{escape(message)}[/red]")
    if remediation and remediation not in message:
        err_console.print(f"Next step: {escape(remediation)}")
    op.error(message, rc=int(rc), context={"remediation": remediation} if remediation else None)
    raise typer.Exit(code=rc)


@contextmanager
def _operation(
    runtime: RuntimeContext,
    command: str,
    *,
    args: Mapping[str, object] | None = None,
    lock: bool = True,
) -> Iterator[OperationScope]:
    """Log *command*, hold the maintenance lock and map failures to exit 1."""
    with runtime.logger.operation(
        command,
        args=args,
        target={"kind": "stack", "project": runtime.config.compose.project},
    ) as op:
        try:
            if lock:
                with runtime.locks.maintenance_lock() as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    yield op
            else:
                yield op
        except UnmsctlError as exc:
            _command_error(op, str(exc), remediation=exc.remediation)
        except LockError as exc:
            _command_error(op, str(exc))


def _report(op: OperationScope, outcome: CommandOutcome) -> None:
    style = "green" if outcome.changed else "yellow"
    console.print(f"[{style}]{escape(outcome.message)}[/{style}]")
    output = outcome.details.get("output")
    if isinstance(output, str) and output:
        console.print(escape(output))
    if outcome.restart_required:
        console.print(f"[yellow]{escape(RESTART_REMINDER)}[/yellow]")
    op.success(outcome.message, changed=outcome.changed, context=dict(outcome.details))


def _print_json(payload: object) -> None:
    console.print(json.dumps(payload, indent=2), markup=False, highlight=False)


@app.command("status")
def status_command(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show whether UNMS is running and list running services."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "status", args={"json": json_output}, lock=False) as op:
        state, services = runtime.dispatcher.status()
        if json_output:
            _print_json({"state": state.value, "services": services})
        else:
            label = "[green]running[/green]" if services else "[yellow]stopped[/yellow]"
            console.print(f"UNMS is {label}.")
            if services:
                table = Table(title="Running services")
                table.add_column("Service")
                for service in services:
                    table.add_row(service)
                console.print(table)
        op.success("Reported stack status.", context={"state": state.value})


@app.command("start")
def start_command(ctx: typer.Context) -> None:
    """Start UNMS (no-op when it is already running)."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "start") as op:
        _report(op, runtime.dispatcher.start())


@app.command("stop")
def stop_command(ctx: typer.Context) -> None:
    """Stop UNMS (no-op when it is already stopped)."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "stop") as op:
        _report(op, runtime.dispatcher.stop())


@app.command("restart")
def restart_command(ctx: typer.Context) -> None:
    """Stop UNMS if it is running, then start it."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "restart") as op:
        _report(op, runtime.dispatcher.restart())


@app.command("fix-redis-aof")
def fix_redis_aof_command(ctx: typer.Context) -> None:
    """Repair a corrupted redis append-only file (UNMS must be stopped)."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "fix-redis-aof") as op:
        _report(op, runtime.dispatcher.fix_redis_aof())


@app.command("rewrite-redis-aof")
def rewrite_redis_aof_command(ctx: typer.Context) -> None:
    """Compact the redis append-only file (UNMS must be running)."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "rewrite-redis-aof") as op:
        _report(op, runtime.dispatcher.rewrite_redis_aof())


@app.command("refresh-certificate")
def refresh_certificate_command(ctx: typer.Context) -> None:
    """Renew or regenerate the HTTPS certificate (UNMS must be running)."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "refresh-certificate") as op:
        _report(op, runtime.dispatcher.refresh_certificate())


@app.command("reduce-device-update-frequency")
def reduce_device_update_frequency_command(ctx: typer.Context) -> None:
    """Set the device transmission profile to 'auto' (UNMS must be running)."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "reduce-device-update-frequency") as op:
        _report(op, runtime.dispatcher.reduce_device_update_frequency())


@app.command("clear-device-backups")
def clear_device_backups_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report what would be deleted without deleting anything.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Keep the newest device backups and delete the rest (UNMS must be running)."""
    runtime = _get_runtime(ctx)
    with _operation(
        runtime,
        "clear-device-backups",
        args={"dry_run": dry_run, "json": json_output},
        lock=not dry_run,
    ) as op:
        report = runtime.dispatcher.clear_device_backups(dry_run=dry_run)
        _render_sweep_report(report, json_output=json_output)
        op.success(
            "Device backups swept." if not dry_run else "Dry run complete.",
            changed=0 if dry_run else report.total,
            context=report.to_dict(),
        )


def _render_sweep_report(report: SweepReport, *, json_output: bool) -> None:
    if json_output:
        _print_json(report.to_dict())
        return
    verb = "would be removed" if report.dry_run else "removed"
    for device_id, count in sorted(report.per_directory_deleted.items()):
        console.print(f"{escape(device_id)}: {count} backups {verb}")
    prefix = "[yellow]Dry run[/yellow]: " if report.dry_run else ""
    console.print(f"{prefix}{report.total} old device backups {verb}.")


@app.command("set-workers")
def set_workers_command(
    ctx: typer.Context,
    count: str = typer.Argument(..., metavar="COUNT", help="Worker count (1-8) or 'auto'."),
) -> None:
    """Set the number of UNMS worker processes."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "set-workers", args={"count": count}) as op:
        _report(op, runtime.dispatcher.set_workers(count))


@app.command("get-config")
def get_config_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Entry name, e.g. workers or ssl-cert."),
) -> None:
    """Print a configuration entry from unms.conf."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "get-config", args={"name": name}, lock=False) as op:
        value = runtime.config_store.get(name)
        console.print(escape(value), highlight=False)
        op.success("Read configuration entry.", context={"name": name})


@app.command("show-config")
def show_config_command(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the resolved unmsctl configuration."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "show-config", args={"json": json_output}, lock=False) as op:
        payload = runtime.config.to_dict()
        if json_output:
            _print_json(payload)
        else:
            table = Table(title="unmsctl configuration")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in _flatten(payload):
                table.add_row(key, escape(str(value)))
            console.print(table)
        op.success("Rendered configuration.")


def _flatten(payload: Mapping[str, object], prefix: str = "") -> Iterator[tuple[str, object]]:
    for key, value in payload.items():
        label = f"{prefix}{key}"
        if isinstance(value, Mapping):
            yield from _flatten(value, f"{label}.")
        else:
            yield label, value


@app.command("show-certificate")
def show_certificate_command(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show subject, issuer and expiry of the served certificate."""
    runtime = _get_runtime(ctx)
    with _operation(runtime, "show-certificate", args={"json": json_output}, lock=False) as op:
        try:
            ssl_cert = runtime.config_store.get("ssl-cert")
        except NotFoundError:
            ssl_cert = ""
        path = runtime.inspector.certificate_path(ssl_cert)
        info = runtime.inspector.inspect(path)
        warn_days = runtime.config.certificates.warn_expiry_days
        expiring = info.days_remaining < warn_days
        if json_output:
            _print_json({**info.to_dict(), "expiring": expiring})
        else:
            console.print(f"Certificate: {escape(str(info.path))}")
            console.print(f"Subject: {escape(info.subject or '-')}")
            console.print(f"Issuer: {escape(info.issuer or '-')}")
            console.print(
                f"Expires: {info.not_valid_after.isoformat()} "
                f"({info.days_remaining} days remaining)"
            )
        if expiring:
            message = f"Certificate expires in {info.days_remaining} days."
            if not json_output:
                console.print(
                    f"[yellow]{escape(message)} Renew it: {CLI_NAME} refresh-certificate[/yellow]"
                )
            op.warning(message, warnings=[message], context=info.to_dict())
        else:
            op.success("Certificate inspected.", context=info.to_dict())


def main(argv: Sequence[str] | None = None) -> int:
    """Console script entry point; every failure maps to exit status 1."""
    try:
        app(args=list(argv) if argv is not None else None, prog_name=CLI_NAME)
    except SystemExit as exc:
        return _exit_status(exc.code)
    return int(ExitCode.OK)


def _exit_status(code: object) -> int:
    # Usage errors exit 2 under click; the CLI contract only knows 0 and 1.
    if code is None or code == 0:
        return int(ExitCode.OK)
    return int(ExitCode.FAILURE)


__all__ = ["app", "main"]
