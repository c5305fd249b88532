# src/migraflow/cli.py
"""Migraflow Command Line Interface.

Entry point for the migraflow CLI tool.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError as SettingsValidationError

from migraflow import __version__
from migraflow.contracts.errors import MigraflowError, NotFoundError, UnauthorizedError, ValidationError
from migraflow.core.config import MigraflowSettings, load_settings, load_settings_or_default, sanitize_url

if TYPE_CHECKING:
    from migraflow.contracts.models import ExecutionStatusView
    from migraflow.engine.runtime import MigraflowRuntime

__all__ = [
    "app",
]

_DEFAULT_SETTINGS = Path("settings.yaml")


@dataclass
class _LogOptions:
    verbose: bool = False
    json_logs: bool = False


# Set by the app callback; settings may refine the level once loaded.
_log_options = _LogOptions()


app = typer.Typer(
    name="migraflow",
    help="Migraflow: durable orchestration for database migration runs.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"migraflow version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    # load_dotenv searches current dir and parents by default
    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Migraflow: durable orchestration for database migration runs."""
    from migraflow.core.logging import configure_logging

    _log_options.verbose = verbose
    _log_options.json_logs = json_logs
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


# === Shared helpers ===


def _fail(message: str) -> typer.Exit:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    return typer.Exit(1)


def _load_cli_settings(settings: str | None) -> MigraflowSettings:
    """Load settings from --settings, ./settings.yaml, or defaults plus env."""
    if settings is not None:
        path: Path | None = Path(settings).expanduser()
    elif _DEFAULT_SETTINGS.exists():
        path = _DEFAULT_SETTINGS
    else:
        path = None

    try:
        config = load_settings_or_default(path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        raise _fail(f"Settings file not found: {settings}") from None
    except SettingsValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None

    if not _log_options.verbose and (config.logging.level != "INFO" or config.logging.json_output):
        from migraflow.core.logging import configure_logging

        configure_logging(
            json_output=_log_options.json_logs or config.logging.json_output,
            level=config.logging.level,
        )
    return config


@contextmanager
def _runtime(settings: str | None) -> Iterator[MigraflowRuntime]:
    """Open the engine for one command and map domain errors to exit code 1."""
    from migraflow.engine.runtime import MigraflowRuntime

    config = _load_cli_settings(settings)
    try:
        runtime = MigraflowRuntime.from_settings(config)
    except ImportError as e:
        raise _fail(f"Could not load stage handler plugins: {e}") from None
    except Exception as e:
        raise _fail(f"Could not open database {sanitize_url(config.database.url)}: {e}") from None

    try:
        yield runtime
    except UnauthorizedError as e:
        raise _fail(f"Unauthorized: {e}") from None
    except NotFoundError as e:
        raise _fail(str(e)) from None
    except ValidationError as e:
        raise _fail(f"Invalid request: {e}") from None
    except MigraflowError as e:
        raise _fail(str(e)) from None
    finally:
        runtime.close()


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _print_status(view: ExecutionStatusView) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    colors = {"completed": "green", "failed": "red", "cancelled": "yellow", "running": "cyan"}
    color = colors.get(view.status.value, "white")
    console.print(
        f"Execution [bold]{view.execution_id}[/]: [{color}]{view.status.value}[/] "
        f"({view.progress}%, {view.completed_stages}/{view.total_stages} stages)"
    )

    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Job")
    table.add_column("Attempts", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Duration (ms)", justify="right")
    for stage in view.stages:
        job = stage.job
        table.add_row(
            stage.title,
            stage.status.value,
            job.state.value if job else "-",
            f"{job.attempts_made}/{job.max_attempts}" if job else "-",
            str(stage.records_processed),
            str(stage.records_failed),
            str(stage.duration_ms) if stage.duration_ms is not None else "-",
        )
    console.print(table)
    if view.error:
        console.print(f"[red]Error:[/] {view.error}")


_SETTINGS_HELP = "Path to settings YAML (default: ./settings.yaml when present)."


# === Commands ===


@app.command()
def start(
    project_id: str = typer.Argument(..., help="Project to migrate."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Start a new execution of a project and enqueue its first stage."""
    with _runtime(settings) as runtime:
        result = runtime.controller.start(project_id)
    if json_output:
        _echo_json(result.to_dict())
        return
    typer.echo(f"Started execution {result.execution_id}")
    for job_id in result.job_ids:
        typer.echo(f"  queued {job_id}")


@app.command()
def status(
    execution_id: str = typer.Argument(..., help="Execution to inspect."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show aggregated progress of an execution."""
    with _runtime(settings) as runtime:
        view = runtime.controller.status(execution_id)
    if json_output:
        _echo_json(view.to_dict())
    else:
        _print_status(view)


@app.command()
def cancel(
    execution_id: str = typer.Argument(..., help="Execution to cancel."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
) -> None:
    """Cancel every pending or running stage of an execution."""
    with _runtime(settings) as runtime:
        result = runtime.controller.cancel(execution_id)
    typer.echo(f"Cancelled {result.cancelled_count} stage(s) of execution {execution_id}")


@app.command()
def pause(
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
) -> None:
    """Stop handing out queued jobs (active jobs keep running)."""
    with _runtime(settings) as runtime:
        runtime.controller.pause()
    typer.echo("Queue paused")


@app.command()
def resume(
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
) -> None:
    """Resume handing out queued jobs."""
    with _runtime(settings) as runtime:
        runtime.controller.resume()
    typer.echo("Queue resumed")


@app.command("queue-stats")
def queue_stats(
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show job counts per queue state."""
    with _runtime(settings) as runtime:
        view = runtime.controller.queue_stats()
    data = view.to_dict()
    if json_output:
        _echo_json(data)
        return
    for key in ("waiting", "active", "delayed", "completed", "failed", "total", "paused"):
        typer.echo(f"{key:>10}: {data[key]}")


@app.command()
def history(
    project_id: str | None = typer.Option(None, "--project", "-p", help="Only executions of this project."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum executions to list."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List recent executions, newest first."""
    with _runtime(settings) as runtime:
        executions = runtime.controller.history(project_id=project_id, limit=limit)
    if json_output:
        _echo_json(
            [
                {
                    "execution_id": e.execution_id,
                    "project_id": e.project_id,
                    "status": e.status.value,
                    "processed_records": e.processed_records,
                    "failed_records": e.failed_records,
                    "created_at": e.created_at.isoformat(),
                    "ended_at": e.ended_at.isoformat() if e.ended_at else None,
                }
                for e in executions
            ]
        )
        return
    if not executions:
        typer.echo("No executions found.")
        return
    for e in executions:
        typer.echo(f"{e.execution_id}  {e.project_id:<16} {e.status.value:<10} {e.created_at.isoformat()}")


@app.command()
def drain(
    max_jobs: int | None = typer.Option(None, "--max-jobs", "-m", min=1, help="Jobs to process (default: drain.max_jobs)."),
    secret: str | None = typer.Option(None, "--secret", help="Shared drain secret presented by the caller."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Process a bounded batch of waiting jobs and exit.

    Intended for schedulers that invoke migraflow periodically instead of
    running a persistent worker.
    """
    with _runtime(settings) as runtime:
        report = runtime.drain_consumer().drain_once(max_jobs, secret=secret)
    if json_output:
        _echo_json(report.to_dict())
        return
    typer.echo(f"Processed {report.processed} job(s), {report.failed} failed, {report.remaining} waiting")


@app.command()
def worker(
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", min=1, help="Parallel jobs (default: worker.concurrency)."),
    until_idle: bool = typer.Option(False, "--until-idle", help="Exit once the queue has no claimable work."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
) -> None:
    """Run a persistent worker until SIGINT/SIGTERM."""
    with _runtime(settings) as runtime:
        report = runtime.worker(concurrency=concurrency).run(max_idle_polls=1 if until_idle else None)
    typer.echo(f"Worker processed {report.processed} job(s), {report.failed} failed")


@app.command()
def purge(
    execution_id: str | None = typer.Argument(None, help="Terminal execution to delete."),
    expired: bool = typer.Option(False, "--expired", help="Purge every terminal execution past retention."),
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        "-r",
        min=1,
        help="Override retention.retention_days for --expired.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
) -> None:
    """Delete finished executions with their stages, jobs and correlations.

    Examples:

        # Delete one finished execution
        migraflow purge 3f2a... --yes

        # Delete everything older than 30 days
        migraflow purge --expired --retention-days 30 --yes
    """
    if (execution_id is None) == (not expired):
        raise _fail("Give either an EXECUTION_ID or --expired")

    with _runtime(settings) as runtime:
        if not yes:
            target = execution_id if execution_id is not None else "all expired executions"
            if not typer.confirm(f"Delete {target}?"):
                typer.echo("Aborted.")
                raise typer.Exit(1)
        if execution_id is not None:
            result = runtime.controller.purge(execution_id)
        else:
            result = runtime.controller.purge_expired(retention_days)

    typer.echo(f"Purge completed in {result.duration_seconds:.2f}s:")
    typer.echo(f"  Executions: {result.executions_deleted}")
    typer.echo(f"  Stages: {result.stages_deleted}")
    typer.echo(f"  Jobs: {result.jobs_deleted}")
    typer.echo(f"  Correlations: {result.correlations_deleted}")


@app.command()
def handlers(
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_HELP),
) -> None:
    """List registered stage handlers."""
    with _runtime(settings) as runtime:
        specs = runtime.plugins.list_handlers()
    if not specs:
        typer.echo("No stage handlers registered. List handler modules under 'plugins' in settings.")
        return
    for spec in specs:
        typer.echo(f"{spec.stage.value:<16} {spec.name:<24} {spec.handler_class}")


if __name__ == "__main__":
    app()
