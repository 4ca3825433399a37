"""Flow commands - eem flow generate/show/export/search."""

from __future__ import annotations

from pathlib import Path

import click
from rich import box
from rich.table import Table

from eem.cli.main import console, fail, make_context
from eem.core.errors import EemError, atomic_write
from eem.core.models import NOT_FOUND, Flow


def _flow_table(flows: list[Flow], title: str) -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Created", no_wrap=True)
    table.add_column("Nodes", justify="right")
    table.add_column("Summary", max_width=60)
    for f in flows:
        table.add_row(f.id, f.name, f.timestamp.strftime("%Y-%m-%d %H:%M"), str(len(f.nodes)), f.summary)
    return table


@click.group()
def flow():
    """Generate, inspect and export activity flows."""


@flow.command()
@click.argument("name")
@click.option("--session", "session_id", default=None, help="Session to build the flow from")
@click.option("--window", "window_minutes", type=float, default=None, help="Look-back window in minutes (default 24h)")
@click.option("--topic", "focus_topic", default=None, help="Also include activities matching this topic")
@click.option("--category", "categories", multiple=True, help="Category label (repeatable)")
@click.option("--event", "event_ids", multiple=True, help="Build from these activity ids only (repeatable)")
@click.pass_context
def generate(
    ctx: click.Context,
    name: str,
    session_id: str | None,
    window_minutes: float | None,
    focus_topic: str | None,
    categories: tuple[str, ...],
    event_ids: tuple[str, ...],
):
    """Synthesize and store a flow called NAME."""
    context = make_context(ctx, run_log=True)
    try:
        created = context.synthesizer.generate_flow(
            name,
            session_id=session_id,
            window_minutes=window_minutes,
            focus_topic=focus_topic,
            categories=list(categories) or None,
            event_ids=list(event_ids) or None,
        )
    except EemError as e:
        fail(str(e))

    console.print(f"[green]Generated flow:[/green] {created.name} [dim]({created.id})[/dim]")
    console.print(created.summary)


@flow.command()
@click.argument("flow_id")
@click.pass_context
def show(ctx: click.Context, flow_id: str):
    """Show the nodes and edges of a stored flow."""
    found = make_context(ctx).synthesizer.get_flow(flow_id)
    if found is None:
        fail(f"Flow not found: {flow_id}")

    console.print(f"[bold]{found.name}[/bold] [dim]{found.id}[/dim]")
    console.print(found.summary)
    labels = {n.id: n.label for n in found.nodes}
    table = Table(box=box.SIMPLE)
    table.add_column("Type", style="bold")
    table.add_column("Label")
    for node in found.nodes:
        table.add_row(node.node_type, node.label)
    console.print(table)
    for edge in found.edges:
        console.print(
            f"  {labels[edge.source_id]} [dim]--{edge.relation_type} ({edge.weight:.2f})-->[/dim] "
            f"{labels[edge.target_id]}",
            highlight=False,
        )


@flow.command()
@click.argument("flow_id")
@click.option(
    "--format", "fmt", default="json", show_default=True,
    type=click.Choice(["json", "dot", "mermaid"], case_sensitive=False),
)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write to this file instead of stdout")
@click.pass_context
def export(ctx: click.Context, flow_id: str, fmt: str, output: Path | None):
    """Render a stored flow as JSON, DOT or Mermaid."""
    try:
        rendered = make_context(ctx).synthesizer.export_flow(flow_id, fmt)
    except EemError as e:
        fail(str(e))
    if rendered is NOT_FOUND:
        fail(f"Flow not found: {flow_id}")

    if output is None:
        click.echo(rendered)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(output, rendered)
    console.print(f"[green]Exported:[/green] {output}")


@flow.command()
@click.argument("query")
@click.option("--limit", default=10, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: str, limit: int):
    """Find stored flows matching QUERY."""
    flows = make_context(ctx).synthesizer.search_flows(query, limit)
    if not flows:
        console.print(f"[dim]No flows match:[/dim] {query}")
        return
    console.print(_flow_table(flows, f"Flows matching '{query}'"))
