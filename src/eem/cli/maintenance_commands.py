"""Maintenance commands - eem ingest, eem purge."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import click

from eem.cli.main import console, fail, make_context, read_activities
from eem.core.errors import EemError
from eem.core.models import utcnow


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--hash/--no-hash", "with_hash", default=True, help="Compute content hashes before storing")
@click.pass_context
def ingest(ctx: click.Context, file: Path, with_hash: bool):
    """Store activities from a JSONL FILE (one activity object per line)."""
    context = make_context(ctx)
    events = read_activities(file)
    stored = 0
    try:
        for event in events:
            if with_hash and event.content_hash is None:
                event.compute_content_hash()
            context.activities.save(event)
            stored += 1
    except EemError as e:
        fail(f"stored {stored} of {len(events)} activities: {e}")
    console.print(f"[green]Ingested:[/green] {stored} activities from {file}")


@click.command()
@click.option("--days", type=int, default=None, help="Retention in days (default from settings)")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def purge(ctx: click.Context, days: int | None, yes: bool):
    """Delete activities and relations older than the retention period."""
    context = make_context(ctx)
    days = context.settings.retention_days if days is None else days
    if days < 0:
        fail("--days must not be negative")
    cutoff = utcnow() - timedelta(days=days)

    if not yes:
        console.print(f"This will delete activities and relations older than [bold]{days}[/bold] days.")
        if not click.confirm("Continue?"):
            console.print("[dim]Aborted.[/dim]")
            return

    try:
        activities = context.activities.purge_older_than(cutoff)
        relations = context.relations.purge_older_than(cutoff)
    except EemError as e:
        fail(str(e))
    console.print(f"[green]Purged:[/green] {activities} activities, {relations} relations")
