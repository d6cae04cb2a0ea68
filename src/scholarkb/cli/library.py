"""scholarkb library CLI commands.

Commands:
  scholarkb library create <name>          — create a library from the loaded config
  scholarkb library list                   — show libraries with document/chunk counts
  scholarkb library delete <name>          — delete a library and everything it owns
  scholarkb library config <name> [--set]  — show or update the library's settings
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from rich.panel import Panel
from rich.table import Table

from scholarkb.cli.common import DEFAULT_DB, check, console, service_for
from scholarkb.cli.errors import err_config

library_app = typer.Typer(
    name="library",
    help="Manage libraries (create, list, delete, config).",
    add_completion=False,
)


@library_app.command("create")
def library_create_cmd(
    name: Annotated[str, typer.Argument(help="Library name (unique).")],
    description: Annotated[
        str,
        typer.Option("--description", "-d", help="Free-text description."),
    ] = "",
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db (created if missing)."),
    ] = DEFAULT_DB,
) -> None:
    """Create a library; its settings are a snapshot of the current config."""
    with service_for(db, create=True) as service:
        result = check(service.create_library(name, description), "Create library")
    library = result["library"]
    console.print(f"[green]✓[/] Library [bold]{library['name']}[/] created ({library['id']})")


@library_app.command("list")
def library_list_cmd(
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """List libraries with document and chunk counts."""
    with service_for(db) as service:
        libraries = check(service.list_libraries(), "List libraries")["libraries"]

    if not libraries:
        console.print("[yellow]No libraries yet.[/]\n  Run:  scholarkb library create <name>")
        raise typer.Exit(0)

    table = Table(title="Libraries", show_header=True, header_style="bold")
    table.add_column("Name", style="bold")
    table.add_column("Documents", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Embedding model", style="dim")
    table.add_column("Description")
    for lib in libraries:
        table.add_row(
            lib["name"],
            str(lib["documentCount"]),
            f"{lib['chunkCount']:,}",
            lib["config"].get("embedding", {}).get("model", ""),
            lib["description"] or "",
        )
    console.print(table)


@library_app.command("delete")
def library_delete_cmd(
    name: Annotated[str, typer.Argument(help="Library name or id.")],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Delete a library with its documents, chunks, embeddings and FTS records."""
    with service_for(db) as service:
        check(service.get_library(name), "Delete library")
        if not yes:
            if not typer.confirm(f"Delete library '{name}' and all its data?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)
        check(service.delete_library(name), "Delete library")
    console.print(f"[green]✓[/] Deleted library: {name}")


@library_app.command("config")
def library_config_cmd(
    name: Annotated[str, typer.Argument(help="Library name or id.")],
    set_values: Annotated[
        list[str] | None,
        typer.Option(
            "--set",
            help="Update a setting, e.g. --set chunking.chunk_size=800 (repeatable).",
        ),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """Show a library's settings, or update them with --set section.key=value."""
    with service_for(db) as service:
        if set_values:
            try:
                updates = parse_assignments(set_values)
            except ValueError as exc:
                console.print(err_config(str(exc)))
                raise typer.Exit(1) from exc
            result = check(service.update_library_config(name, updates), "Update config")
            config = result["config"]
            console.print("[green]✓[/] Library config updated")
            console.print(
                "  [dim]Existing documents keep their chunks; reprocess them to apply "
                "new chunking settings.[/]"
            )
        else:
            config = check(service.get_library(name), "Show config")["library"]["config"]

    console.print(
        Panel(
            yaml.safe_dump(config, sort_keys=False, allow_unicode=True).rstrip(),
            title=f"[bold]{name}[/]",
            expand=False,
        )
    )


def parse_assignments(assignments: list[str]) -> dict[str, Any]:
    """Turn ``section.key=value`` strings into a nested update dict.

    Values are parsed as YAML scalars/lists, so ``true``, ``800`` and
    ``["\\n\\n", " "]`` arrive typed.

    Raises:
        ValueError: If an assignment is not of the form section.key=value.
    """
    updates: dict[str, Any] = {}
    for item in assignments:
        target, sep, raw = item.partition("=")
        section, dot, key = target.strip().partition(".")
        if not sep or not dot or not section or not key:
            raise ValueError(f"Expected section.key=value, got '{item}'")
        try:
            value = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError:
            value = raw
        updates.setdefault(section, {})[key] = value
    return updates
