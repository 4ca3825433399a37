"""Context commands - eem context."""

from __future__ import annotations

import json

import click
from rich import box
from rich.table import Table

from eem.cli.main import console, fail, make_context
from eem.core.errors import EemError

KIND_STYLES = {
    "activity": "cyan",
    "relation": "magenta",
    "flow": "green",
}


@click.command()
@click.argument("query")
@click.option("--session", "session_id", default=None, help="Only include records of this session")
@click.option("--limit", default=5, show_default=True, help="Max results (1-20)")
@click.option("--in", "search_in", default="all", show_default=True, help="Record kinds to search: aje, ire, e or all")
@click.option(
    "--window", "window_hours", default=24.0, show_default=True,
    help="Hours of recent records used to fill up; 0 for no bound",
)
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["table", "markdown", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
@click.pass_context
def context(
    ctx: click.Context,
    query: str,
    session_id: str | None,
    limit: int,
    search_in: str,
    window_hours: float,
    fmt: str,
):
    """Retrieve the stored context most relevant to QUERY."""
    eem_context = make_context(ctx)
    try:
        digest = eem_context.context_builder.relevant_context(
            query, session_id=session_id, limit=limit, search_in=search_in, window_hours=window_hours,
        )
    except EemError as e:
        fail(str(e))

    fmt = fmt.lower()
    if fmt == "json":
        click.echo(json.dumps(digest.to_dict(), indent=2, ensure_ascii=False))
        return
    if fmt == "markdown":
        click.echo(digest.to_markdown())
        return

    if not digest.items:
        console.print(f"[dim]No relevant context for:[/dim] {query}")
        return

    table = Table(title=f'Context for "{query}"', box=box.ROUNDED)
    table.add_column("Kind")
    table.add_column("Score", justify="right")
    table.add_column("Title", style="bold")
    table.add_column("When", style="dim")
    table.add_column("ID", style="dim")
    for item in digest.items:
        style = KIND_STYLES.get(item.kind, "white")
        score = f"{item.score:.2f}" if item.matched else f"[dim]{item.score:.2f} (recent)[/dim]"
        table.add_row(
            f"[{style}]{item.kind}[/{style}]",
            score,
            item.title,
            f"{item.timestamp:%Y-%m-%d %H:%M}",
            item.id,
        )
    console.print(table)
