"""scholarkb status — index health overview.

Shows totals (chunks, embeddings, FTS records), a per-library table and any
consistency issues found by diagnostics. Nothing is repaired here; the
issue lines name the command that fixes them (rebuild-fts, embed).
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

import typer
from rich.panel import Panel
from rich.table import Table

from scholarkb.cli.common import DEFAULT_DB, check, console, service_for


def status_cmd(
    library: Annotated[
        str | None,
        typer.Option("--library", "-l", help="Only this library (default: all)."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
    strict: Annotated[
        bool,
        typer.Option("--strict", help="Exit 1 when consistency issues are found."),
    ] = False,
) -> None:
    """Show index statistics and consistency issues."""
    with service_for(db) as service:
        report = check(service.get_diagnostics(library), "Status")

    _show_totals_panel(db, report)
    _show_library_table(report["perLibraryStats"])

    if report["issues"]:
        console.print("\n[bold yellow]Issues[/]")
        for issue in report["issues"]:
            console.print(f"  [yellow]⚠[/] {issue}")
        if strict:
            raise typer.Exit(1)
    else:
        console.print("\n[green]✓[/] Index is consistent")


def _show_totals_panel(db: Path, report: dict[str, Any]) -> None:
    size_kb = db.stat().st_size // 1024 if db.exists() else 0
    dims = ", ".join(str(d) for d in report["embeddingDimensions"]) or "-"
    lines = [
        f"Database:    {db}  [dim]({size_kb:,} KB)[/]",
        f"Chunks:      {report['totalChunks']:,}",
        f"Embeddings:  {report['totalEmbeddings']:,}  [dim](dims: {dims})[/]",
        f"FTS records: {report['ftsRecords']:,}",
    ]
    if report["missingEmbeddings"]:
        lines.append(
            f"[yellow]Missing embeddings: {report['missingEmbeddings']:,}[/]  "
            "[dim]run: scholarkb embed[/]"
        )
    if report["orphanFtsRecords"]:
        lines.append(f"[yellow]Orphan FTS records: {report['orphanFtsRecords']:,}[/]")
    console.print(Panel("\n".join(lines), title="[bold]Knowledge Base[/]", expand=False))


def _show_library_table(stats: list[dict[str, Any]]) -> None:
    if not stats:
        console.print("[dim]No libraries yet.  Run:  scholarkb library create <name>[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Library", style="bold")
    table.add_column("Docs", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Embedded", justify="right")
    table.add_column("FTS", justify="right")
    table.add_column("Model", style="dim")
    for s in stats:
        docs = str(s["documentCount"])
        if s["pendingDocuments"]:
            docs += f" [dim]({s['pendingDocuments']} pending)[/]"
        if s["failedDocuments"]:
            docs += f" [red]({s['failedDocuments']} failed)[/]"
        embedded = f"{s['embeddingCount']:,}"
        if s["missingEmbeddings"]:
            embedded = f"[yellow]{embedded}[/]"
        table.add_row(
            s["name"],
            docs,
            f"{s['chunkCount']:,}",
            embedded,
            f"{s['ftsCount']:,}",
            ", ".join(s["embeddingModels"]) or "-",
        )
    console.print(table)
