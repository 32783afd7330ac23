"""Command line entry point (``homemetrics``)."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import structlog
import typer
from pydantic import ValidationError
from sqlalchemy.engine import make_url

from .app import HomeMetricsApp
from .config import HomeMetricsConfig
from .errors import ConfigError, CredentialsExhaustedError, HomeMetricsError
from .interface import MailboxClient
from .logging import setup_logging
from .mailbox import build_mailbox
from .models import BatchReport

logger = structlog.get_logger()

app = typer.Typer(
    help="Ingest home sensor reports (X-Sense, Blue Riot) from a labelled mailbox.",
    context_settings={"help_option_names": ["-h", "--help"]},
    no_args_is_help=True,
)


def _load_config() -> HomeMetricsConfig:
    try:
        return HomeMetricsConfig()
    except ValidationError as exc:
        typer.secho(f"Invalid configuration:\n{exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _print_config(config: HomeMetricsConfig) -> None:
    database = make_url(config.database.url).render_as_string(hide_password=True)
    times = ", ".join(config.scheduler.times) or "none"
    typer.echo(f"mailbox backend : {config.mailbox_backend}")
    typer.echo(f"database        : {database}")
    typer.echo(f"message limit   : {config.limit or 'none'}")
    typer.echo(f"attachment copy : {config.data_dir or 'disabled'}")
    typer.echo(
        f"schedule        : {times} ({config.scheduler.timezone or 'local time'}, "
        f"enabled={config.scheduler.enabled})"
    )
    typer.echo(f"session refresh : every {config.scheduler.refresh_interval_minutes} min")
    typer.echo(f"slack           : {'enabled' if config.slack.webhook_url else 'disabled'}")
    for stream in config.streams:
        state = "on" if stream.enabled else "off"
        typer.echo(
            f"stream {stream.name} ({stream.kind}, {state}): "
            f"{stream.todo} -> {stream.done}, archive {stream.archive}"
        )


def _render_report(report: BatchReport) -> None:
    if report.error:
        typer.secho(f"{report.stream}: aborted: {report.error}", fg=typer.colors.RED)
        return
    colour = typer.colors.YELLOW if report.failed else typer.colors.GREEN
    prefix = "[dry-run] " if report.dry_run else ""
    typer.secho(
        f"{prefix}{report.stream}: {report.found} found, {report.processed} processed, "
        f"{report.skipped} skipped, {report.failed} failed, {report.readings} readings",
        fg=colour,
    )
    for message_id, reason in report.failures:
        typer.echo(f"  {message_id}: {reason}")


@app.command("run")
def run_command(
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Extract and report only: no store writes, no label changes.",
    ),
    limit: Optional[int] = typer.Option(
        None,
        "--limit",
        "-l",
        min=1,
        help="Maximum messages per stream (defaults to HOMEMETRICS_LIMIT).",
    ),
    data_dir: Optional[Path] = typer.Option(
        None,
        "--data-dir",
        "-o",
        help="Keep a dated copy of each stored sensor export here (defaults to HOMEMETRICS_DATA_DIR).",
    ),
    daemon: bool = typer.Option(
        False,
        "--daemon",
        help="Run at the configured SCHEDULER_TIMES until interrupted.",
    ),
    check_config: bool = typer.Option(
        False,
        "--check-config",
        help="Validate and print the configuration, then exit.",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override HOMEMETRICS_LOG_LEVEL."),
    console_logs: bool = typer.Option(False, "--console-logs", help="Human readable logs instead of JSON."),
) -> None:
    """Process every enabled stream once, or run as a daemon."""
    config = _load_config()
    if data_dir is not None:
        config = config.model_copy(update={"data_dir": data_dir})
    try:
        setup_logging(json=config.log_json and not console_logs, level=log_level or config.log_level)
    except ValueError as exc:
        typer.secho(f"Invalid configuration: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    if check_config:
        _print_config(config)
        typer.secho("Configuration OK", fg=typer.colors.GREEN)
        return

    effective_limit = limit if limit is not None else config.limit

    try:
        application = HomeMetricsApp(config)
        if daemon:
            asyncio.run(application.run_daemon(limit=effective_limit, dry_run=dry_run))
            return
        reports = asyncio.run(application.run_once(limit=effective_limit, dry_run=dry_run))
    except (ConfigError, CredentialsExhaustedError) as exc:
        logger.error("homemetrics_fatal", error=str(exc), error_type=type(exc).__name__)
        typer.secho(f"Fatal: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    except HomeMetricsError as exc:
        logger.error("homemetrics_startup_failed", error=str(exc), error_type=type(exc).__name__)
        typer.secho(f"Startup failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    for report in reports:
        _render_report(report)
    if any(report.fatal for report in reports):
        raise typer.Exit(code=1)


async def _fetch_labels(mailbox: MailboxClient) -> list[tuple[str, str]]:
    await mailbox.start()
    try:
        return await mailbox.list_labels()
    finally:
        await mailbox.stop()


@app.command("labels")
def labels_command(
    console_logs: bool = typer.Option(True, "--console-logs/--json-logs", help="Log renderer."),
) -> None:
    """List mailbox labels and their ids, homemetrics labels first."""
    config = _load_config()
    setup_logging(json=not console_logs, level="WARNING")

    try:
        labels = asyncio.run(_fetch_labels(build_mailbox(config)))
    except HomeMetricsError as exc:
        typer.secho(f"Cannot list labels: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    ordered = sorted(labels, key=lambda pair: (not pair[0].startswith("homemetrics/"), pair[0].lower()))
    typer.echo(f"{len(ordered)} label(s)")
    for name, label_id in ordered:
        if name.startswith("homemetrics/"):
            typer.secho(f"{name:<40} {label_id}", fg=typer.colors.CYAN)
        else:
            typer.echo(f"{name:<40} {label_id}")


def main() -> None:
    app()
