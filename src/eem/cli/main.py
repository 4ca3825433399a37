"""Eem CLI - main entry point and shared utilities."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.console import Console

from eem.core.models import ActivityEvent, PipelineExecutionResult

console = Console()

STATUS_STYLES = {
    "completed": "green",
    "skipped": "dim",
    "failed": "red",
}


def fail(message: str, code: int = 1) -> None:
    """Print a red error line and exit with ``code``."""
    console.print(f"[red]Error:[/red] {message}")
    raise SystemExit(code)


def make_context(ctx: click.Context, run_log: bool = False):
    """Build an EemContext from settings, optionally with a JSONL run log."""
    from eem.config import get_settings
    from eem.context import build_context
    from eem.core.logging import EemLogger, Verbosity

    settings = get_settings()
    run_logger = None
    if run_log:
        settings.ensure_storage_dir()
        verbosity = Verbosity(min((ctx.obj or {}).get("verbosity", 0), Verbosity.DEBUG))
        run_logger = EemLogger(verbosity, settings.logs_dir)
    return build_context(settings, run_logger=run_logger)


def read_activities(path: Path) -> list[ActivityEvent]:
    """Load ActivityEvents from a JSONL file (one JSON object per line)."""
    events = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(ActivityEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as e:
                raise click.ClickException(f"{path}:{line_no}: invalid activity: {e}") from e
    return events


def print_result(result: PipelineExecutionResult) -> None:
    """Show the step list of a pipeline run and its final status."""
    for step in result.steps:
        style = STATUS_STYLES.get(step.status.value, "white")
        details = f" [dim]{step.details}[/dim]" if step.details else ""
        console.print(f"  [{style}]{step.name}: {step.status.value}[/{style}]{details}")
    if result.succeeded:
        console.print(f"[green]Completed:[/green] {result.flow_name}")
    else:
        console.print(f"[red]Failed:[/red] {result.flow_name or '<unnamed>'} - {result.error_message}")


@click.group()
@click.option("-v", "--verbose", count=True, help="Verbosity: -v per-stage progress, -vv gateway calls")
@click.pass_context
def main(ctx: click.Context, verbose: int):
    """Eem - turn development activity into correlated, navigable flows."""
    ctx.ensure_object(dict)
    ctx.obj["verbosity"] = verbose


def cli():
    """Entrypoint that loads .env before running the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    main()


# Import subcommand modules to register commands
from eem.cli.context_commands import context  # noqa: E402, F401
from eem.cli.correlate_commands import correlate, insights  # noqa: E402, F401
from eem.cli.flow_commands import flow  # noqa: E402, F401
from eem.cli.maintenance_commands import ingest, purge  # noqa: E402, F401
from eem.cli.script_commands import script  # noqa: E402, F401

main.add_command(script)
main.add_command(flow)
main.add_command(correlate)
main.add_command(insights)
main.add_command(context)
main.add_command(ingest)
main.add_command(purge)
