"""scholarkb rebuild-fts / embed — explicit index repairs.

  scholarkb rebuild-fts [--library NAME]        re-derive FTS5 rows from chunks
  scholarkb embed [--library NAME] [--rebuild]  embed chunks that have none yet
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from scholarkb.cli.common import DEFAULT_DB, check, console, service_for


def rebuild_fts_cmd(
    library: Annotated[
        str | None,
        typer.Option("--library", "-l", help="Only this library (default: all)."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """Rebuild the keyword (FTS5) index from stored chunks."""
    with service_for(db) as service:
        result = check(service.rebuild_fts(library), "Rebuild FTS")
    console.print(f"[green]✓[/] FTS index rebuilt: {result['recordCount']:,} records")


def embed_cmd(
    library: Annotated[
        str | None,
        typer.Option("--library", "-l", help="Only this library (default: all)."),
    ] = None,
    rebuild: Annotated[
        bool,
        typer.Option("--rebuild", help="Drop and regenerate every embedding."),
    ] = False,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """Generate embeddings for chunks that have none."""
    if rebuild and not typer.confirm(
        "Regenerate all embeddings? This calls the embedding provider for every chunk.",
        default=False,
    ):
        console.print("[dim]Cancelled.[/]")
        raise typer.Exit(0)

    with service_for(db) as service:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as prog:
            task = prog.add_task("Embedding…", total=None)

            def on_progress(done: int, total: int) -> None:
                prog.update(task, completed=done, total=total)

            result = service.generate_embeddings(
                library, rebuild=rebuild, on_progress=on_progress
            )
    check(result, "Embed")

    console.print(f"[green]✓[/] {result['processed']:,} chunk(s) embedded")
    if result["cancelled"]:
        console.print("[yellow]⚠ Cancelled before completion[/]")
    if result["failed"]:
        console.print(f"[yellow]⚠ {result['failed']:,} chunk(s) failed[/]")
        for error in result["errors"][:5]:
            console.print(f"  [dim]{error}[/]")
        raise typer.Exit(1)
