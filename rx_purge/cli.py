#!/usr/bin/env python3
"""
Command-line interface for Rx History Purge.

Provides purge, chunked backlog processing, backlog reporting and the
nightly maintenance job.
"""

import json
import sys
from datetime import datetime
from typing import Any, Optional

import click
import pandas as pd  # type: ignore[import-untyped]
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .config import PurgeConfig, get_config
from .driver import WindowedChunkDriver
from .engine import HistoryPurgeEngine
from .exceptions import PurgeError
from .logging_config import configure_logging
from .maintenance import NightlyMaintenance
from .models import DriverRequest, PurgeRequest, PurgeResult
from .schema import init_db

console = Console()


class CliContext:
    """Configuration and lazily created database engine for one invocation."""

    def __init__(self, config: PurgeConfig):
        self.config = config
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.config.database_url)
        return self._engine

    def purge_engine(self) -> HistoryPurgeEngine:
        return HistoryPurgeEngine(self.engine, self.config)


pass_context = click.make_pass_decorator(CliContext)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML configuration file",
)
@click.option("--database-url", help="SQLAlchemy database URL")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Optional[str],
    database_url: Optional[str],
    log_level: Optional[str],
) -> None:
    """Rx History Purge - bounded reclamation of aged prescription history."""
    try:
        config = PurgeConfig.from_file(config_file) if config_file else get_config()
        overrides: dict = {}
        if database_url:
            overrides["database_url"] = database_url
        if log_level:
            overrides["log_level"] = log_level.upper()
        if overrides:
            config = PurgeConfig(**{**config.model_dump(), **overrides})
    except (ValidationError, ValueError, OSError) as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)

    ctx.obj = CliContext(config)

    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Rx History Purge[/bold blue] v{__version__}\n"
                "[dim]Bounded reclamation of aged prescription history[/dim]\n\n"
                "Use [bold]rxpurge --help[/bold] to see available commands.",
                border_style="blue",
            )
        )
        return

    configure_logging(config.log_level)


@cli.command("init-db")
@pass_context
def init_db_command(obj: CliContext) -> None:
    """Create the purge tables."""
    try:
        init_db(obj.engine)
    except SQLAlchemyError as e:
        console.print(f"[red]Error creating tables: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] Tables created in {obj.engine.url!r}")


def _result_table(result: PurgeResult) -> Table:
    table = Table(title="Purge Result", show_header=True)
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="green")

    status = "[green]success[/green]" if result.succeeded else "[red]failed[/red]"
    table.add_row("Status", status)
    table.add_row("Window", str(result.window) if result.window else "-")
    table.add_row("History Rxs deleted", str(result.history_rows_deleted))
    table.add_row("Accept/reject rows deleted", str(result.accept_reject_rows_deleted))
    table.add_row("Batches", str(result.batches))
    table.add_row("Cap reached", "✓" if result.cap_reached else "✗")
    if not result.succeeded:
        table.add_row("Error", f"[red]{result.error_code}: {result.error_message}[/red]")

    for name in sorted(result.rows_by_table):
        table.add_row(f"  {name}", str(result.rows_by_table[name]))
    return table


@cli.command()
@click.option("--older-than-days", type=int, help="Purge Rxs moved to history more than N days ago")
@click.option("--from", "history_from", type=click.DateTime(), help="Window start (inclusive)")
@click.option("--to", "history_to", type=click.DateTime(), help="Window end (exclusive)")
@click.option("--block-size", type=click.IntRange(min=1), help="Rows per block")
@click.option("--max-to-delete", type=click.IntRange(min=1), help="Cap on history Rxs deleted")
@pass_context
def purge(
    obj: CliContext,
    older_than_days: Optional[int],
    history_from: Optional[datetime],
    history_to: Optional[datetime],
    block_size: Optional[int],
    max_to_delete: Optional[int],
) -> None:
    """Run one bounded purge invocation."""
    request = PurgeRequest(
        older_than_days=older_than_days,
        history_from=history_from,
        history_to=history_to,
        block_size=block_size,
        max_to_delete=max_to_delete,
    )
    result = obj.purge_engine().run(request)
    console.print(_result_table(result))
    if not result.succeeded:
        sys.exit(1)


@cli.command()
@click.option("--from", "wide_from", type=click.DateTime(), required=True, help="Range start")
@click.option("--to", "wide_to", type=click.DateTime(), required=True, help="Range end")
@click.option("--chunk-days", type=int, help="Days per sub-range")
@click.option("--block-size", type=click.IntRange(min=1), help="Rows per block")
@click.option("--max-per-exec", type=click.IntRange(min=1), help="Cap per purge pass")
@click.option("--max-execs-per-chunk", type=click.IntRange(min=1), help="Passes allowed per sub-range")
@pass_context
def drive(
    obj: CliContext,
    wide_from: datetime,
    wide_to: datetime,
    chunk_days: Optional[int],
    block_size: Optional[int],
    max_per_exec: Optional[int],
    max_execs_per_chunk: Optional[int],
) -> None:
    """Purge a wide date range in day-sized sub-ranges."""
    driver = WindowedChunkDriver(obj.purge_engine(), obj.config)
    try:
        report = driver.drive(
            DriverRequest(
                wide_from=wide_from,
                wide_to=wide_to,
                chunk_days=chunk_days,
                block_size=block_size,
                max_to_delete_per_exec=max_per_exec,
                max_execs_per_chunk=max_execs_per_chunk,
            )
        )
    except PurgeError as e:
        console.print(f"[red]Error {e.code}: {e.message}[/red]")
        sys.exit(1)

    table = Table(title="Chunk Driver", show_header=True)
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Passes", justify="right")
    table.add_column("History", justify="right", style="green")
    table.add_column("Accept/Reject", justify="right", style="green")
    for chunk in report.chunks:
        table.add_row(
            f"{chunk.chunk_from:%Y-%m-%d %H:%M:%S}",
            f"{chunk.chunk_to:%Y-%m-%d %H:%M:%S}",
            str(chunk.passes),
            str(chunk.history_rows_deleted),
            str(chunk.accept_reject_rows_deleted),
        )
    console.print(table)
    console.print(
        f"State: [bold]{report.state.value}[/bold]  "
        f"History: {report.history_rows_deleted}  "
        f"Accept/reject: {report.accept_reject_rows_deleted}"
    )
    if report.error_code is not None:
        console.print(f"[red]Error {report.error_code}: {report.error_message}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--older-than-days", type=int, help="Retention period override")
@click.option("--format", type=click.Choice(["table", "json", "csv"]), default="table")
@pass_context
def backlog(obj: CliContext, older_than_days: Optional[int], format: str) -> None:
    """Report rows eligible for purge, per month."""
    try:
        report = obj.purge_engine().count_backlog(older_than_days=older_than_days)
    except (PurgeError, SQLAlchemyError) as e:
        console.print(f"[red]Error counting backlog: {e}[/red]")
        sys.exit(1)

    rows = [bucket.model_dump() for bucket in report.buckets]

    if format == "json":
        click.echo(
            json.dumps(
                {
                    "window": report.window.model_dump(mode="json"),
                    "buckets": rows,
                    "history_rows": report.history_rows,
                    "accept_reject_rows": report.accept_reject_rows,
                },
                indent=2,
            )
        )
    elif format == "csv":
        df = pd.DataFrame(rows, columns=["period", "history_rows", "accept_reject_rows"])
        click.echo(df.to_csv(index=False), nl=False)
    else:
        table = Table(title=f"Purge Backlog {report.window}")
        table.add_column("Month", style="cyan")
        table.add_column("History Rxs", justify="right", style="green")
        table.add_column("Accept/Reject", justify="right", style="green")
        for row in rows:
            table.add_row(row["period"], str(row["history_rows"]), str(row["accept_reject_rows"]))
        table.add_row(
            "[bold]Total[/bold]",
            f"[bold]{report.history_rows}[/bold]",
            f"[bold]{report.accept_reject_rows}[/bold]",
        )
        console.print(table)


@cli.command()
@pass_context
def nightly(obj: CliContext) -> None:
    """Run the nightly maintenance job."""
    try:
        report = NightlyMaintenance(obj.engine, obj.config).run()
    except SQLAlchemyError as e:
        console.print(f"[red]Nightly maintenance could not run: {e}[/red]")
        sys.exit(1)

    for name in report.bypassed_steps:
        console.print(f"[dim]- {name}: bypassed[/dim]")
    for name, result in report.results.items():
        mark = "[red]✗[/red]" if name in report.failing_steps else "[green]✓[/green]"
        console.print(f"{mark} {name}")
        if isinstance(result, PurgeResult):
            console.print(f"    {result.summary()}")

    colour = "green" if report.succeeded else "red"
    console.print(f"Outcome: [{colour}]{report.outcome}[/{colour}]")
    if report.failing_steps:
        console.print(f"[yellow]Failing steps: {report.failing_steps_list}[/yellow]")
    if not report.succeeded:
        sys.exit(1)


@cli.group()
def config() -> None:
    """Inspect purge configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
@pass_context
def config_show(obj: CliContext, format: str) -> None:
    """Display current configuration."""
    config_dict = obj.config.to_dict()

    if format == "json":
        click.echo(json.dumps(config_dict, indent=2))
        return
    if format == "yaml":
        import yaml  # type: ignore[import-untyped]

        click.echo(yaml.safe_dump(config_dict, default_flow_style=False))
        return

    table = Table(title="Purge Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Description", style="dim")

    for name, field_info in PurgeConfig.model_fields.items():
        value: Any = config_dict.get(name)
        if isinstance(value, bool):
            value = "✓" if value else "✗"
        table.add_row(name, str(value), field_info.description or "")

    console.print(table)


if __name__ == "__main__":
    cli()
