"""Script commands - eem script validate/run/save/list/show/delete."""

from __future__ import annotations

from pathlib import Path

import click
from rich import box
from rich.table import Table

from eem.cli.main import console, fail, make_context, print_result, read_activities
from eem.core.errors import EemError, ScriptSyntaxError
from eem.core.models import NOT_FOUND


@click.group()
def script():
    """Validate, run and manage pipeline scripts."""


@script.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file: Path):
    """Check that FILE is a well-formed pipeline script."""
    from eem.script.parser import parse

    try:
        parsed = parse(file.read_text(encoding="utf-8"))
    except ScriptSyntaxError as e:
        fail(f"{file}: {e}")

    stages = ", ".join(parsed.stages) or "none"
    console.print(f"[green]Valid:[/green] flow [bold]{parsed.name}[/bold] (stages: {stages})")


@script.command("run")
@click.argument("target")
@click.option(
    "--feed", nargs=2, multiple=True, metavar="TAG FILE",
    help="Publish activities from a JSONL FILE to listen(TAG) before running (repeatable)",
)
@click.pass_context
def run_script(ctx: click.Context, target: str, feed: tuple[tuple[str, str], ...]):
    """Execute a pipeline script.

    TARGET is a script file, or the name of a saved script when no such
    file exists.
    """
    context = make_context(ctx, run_log=True)
    for tag, feed_file in feed:
        context.buffer.extend(tag, read_activities(Path(feed_file)))

    path = Path(target)
    if path.is_file():
        result = context.interpreter.execute(path.read_text(encoding="utf-8"))
    else:
        result = context.processor.execute(target)
        if result is NOT_FOUND:
            fail(f"No script file or saved script named {target!r}")

    print_result(result)
    if context.run_logger and context.run_logger.log_path:
        console.print(f"[dim]Run log: {context.run_logger.log_path}[/dim]")
    if not result.succeeded:
        raise SystemExit(1)


@script.command()
@click.argument("name")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--description", default="", help="Free-text description")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--disabled", is_flag=True, help="Save without enabling the script")
@click.pass_context
def save(ctx: click.Context, name: str, file: Path, description: str, tags: tuple[str, ...], disabled: bool):
    """Save FILE as the script NAME (replacing any script of that name)."""
    context = make_context(ctx)
    try:
        saved = context.processor.save(
            name, file.read_text(encoding="utf-8"), description, list(tags) or None, not disabled,
        )
    except (ValueError, EemError) as e:
        fail(str(e))
    console.print(f"[green]Saved:[/green] {saved.name} [dim]({saved.id})[/dim]")


@script.command("list")
@click.pass_context
def list_scripts(ctx: click.Context):
    """List saved scripts."""
    scripts = make_context(ctx).processor.list()
    if not scripts:
        console.print("[dim]No scripts saved.[/dim]")
        return

    table = Table(title="Scripts", box=box.ROUNDED)
    table.add_column("Name", style="bold")
    table.add_column("Enabled")
    table.add_column("Tags")
    table.add_column("Last run", style="dim")
    table.add_column("Description", max_width=50)
    for s in scripts:
        table.add_row(
            s.name,
            "[green]yes[/green]" if s.enabled else "[red]no[/red]",
            ", ".join(s.tags),
            s.last_run.strftime("%Y-%m-%d %H:%M") if s.last_run else "-",
            s.description,
        )
    console.print(table)


@script.command()
@click.argument("name")
@click.pass_context
def show(ctx: click.Context, name: str):
    """Print the text of the saved script NAME."""
    found = make_context(ctx).processor.get(name)
    if found is NOT_FOUND:
        fail(f"Script not found: {name}")
    console.print(f"[bold]{found.name}[/bold] [dim]{found.id}[/dim]")
    if found.description:
        console.print(found.description)
    console.print(found.text, markup=False, highlight=False)


@script.command()
@click.argument("name")
@click.pass_context
def delete(ctx: click.Context, name: str):
    """Delete the saved script NAME."""
    removed = make_context(ctx).processor.delete(name)
    if removed is NOT_FOUND:
        fail(f"Script not found: {name}")
    console.print(f"[green]Deleted:[/green] {name}")
