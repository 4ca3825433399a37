"""Correlation commands - eem correlate, eem insights."""

from __future__ import annotations

import click
from rich import box
from rich.table import Table

from eem.cli.main import console, fail, make_context
from eem.core.errors import EemError


@click.command()
@click.option("--session", "session_id", default=None, help="Only analyze this session")
@click.option("--window", "window_minutes", default=60.0, show_default=True, help="Look-back window in minutes")
@click.option("--threshold", type=float, default=None, help="Similarity threshold (default from settings)")
@click.option("--map/--no-map", "map_activities", default=True, help="Also link the activities behind each correlation")
@click.option("--temporal", is_flag=True, help="Also record temporal relations between consecutive activities")
@click.pass_context
def correlate(
    ctx: click.Context,
    session_id: str | None,
    window_minutes: float,
    threshold: float | None,
    map_activities: bool,
    temporal: bool,
):
    """Detect semantic correlations between entities of recent activities."""
    context = make_context(ctx, run_log=True)
    detector = context.detector
    if not detector.enabled:
        console.print("[yellow]Correlation analysis is disabled.[/yellow]")
        return

    try:
        report = detector.detect(session_id=session_id, window_minutes=window_minutes, threshold=threshold)
        mapped = detector.map_to_activity_relations(report) if map_activities else []
        temporal_relations = (
            detector.detect_temporal(report.activities, persist=True) if temporal else []
        )
    except EemError as e:
        fail(str(e))

    if not report.activities:
        console.print("[dim]No activities in the requested window.[/dim]")
        return

    console.print(
        f"Analyzed [bold]{len(report.activities)}[/bold] activities, "
        f"[bold]{len(report.entities)}[/bold] entities"
    )
    if report.failed_extractions:
        console.print(f"[yellow]{len(report.failed_extractions)} extraction(s) failed[/yellow]")
    if report.dropped_entities:
        console.print(f"[yellow]{len(report.dropped_entities)} entities over the cap were dropped[/yellow]")

    if report.correlations:
        table = Table(title="Correlations", box=box.ROUNDED)
        table.add_column("Entity A", style="bold")
        table.add_column("Entity B", style="bold")
        table.add_column("Similarity", justify="right")
        for c in sorted(report.correlations, key=lambda c: -c.similarity):
            table.add_row(c.entity_a, c.entity_b, f"{c.similarity:.3f}")
        console.print(table)
    else:
        console.print("[dim]No correlations above the threshold.[/dim]")

    console.print(
        f"[green]Stored:[/green] {len(report.relations)} entity relation(s), "
        f"{len(mapped)} activity relation(s), {len(temporal_relations)} temporal relation(s)"
    )


@click.command()
@click.option("--limit", default=10, show_default=True, help="Number of strongest correlations to consider")
@click.pass_context
def insights(ctx: click.Context, limit: int):
    """Summarize the strongest stored correlations as a few insights."""
    context = make_context(ctx)
    try:
        text = context.detector.generate_insights(limit)
    except EemError as e:
        fail(str(e))
    console.print(text, markup=False)
