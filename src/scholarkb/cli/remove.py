"""scholarkb remove — document lifecycle management.

Removes a document and all its associated data from the knowledge base:
  - chunks (+ FTS5 index entries)
  - embeddings
  - citation usage counts

Usage:
  scholarkb remove 3f2a...                      (document id)
  scholarkb remove papers/attention.tex --library papers --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

import typer

from scholarkb.cli.common import DEFAULT_DB, check, console, service_for


def remove_cmd(
    document: Annotated[
        str,
        typer.Argument(help="Document id, path or filename."),
    ],
    library: Annotated[
        str | None,
        typer.Option("--library", "-l", help="Library to look the path/filename up in."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove a document and all its data from the knowledge base."""
    with service_for(db) as service:
        documents = check(service.list_documents(library), "Remove")["documents"]
        matches = find_documents(documents, document)

        if not matches:
            console.print(
                f"[yellow]Document '{document}' not found.[/]\n"
                "  Run:  scholarkb status  to see indexed libraries."
            )
            raise typer.Exit(0)
        if len(matches) > 1:
            console.print(
                f"[red]Error:[/] '{document}' matches {len(matches)} documents.\n"
                "  Pass --library or the document id."
            )
            raise typer.Exit(1)

        target = matches[0]
        console.print(f"\nRemove document: [bold]{target['path'] or target['filename']}[/]")
        console.print(f"  Chunks: {target['chunkCount']}  |  Status: {target['status']}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        result = check(service.remove_document(target["documentId"]), "Remove")

    console.print(f"\n[green]✓[/] Removed: {target['filename']}")
    console.print(f"  {result['removedChunks']} chunks deleted")


def find_documents(documents: list[dict[str, Any]], ref: str) -> list[dict[str, Any]]:
    """Match *ref* against document ids first, then paths, then filenames."""
    by_id = [d for d in documents if d["documentId"] == ref]
    if by_id:
        return by_id
    resolved = str(Path(ref).resolve()) if ref else ref
    by_path = [d for d in documents if d["path"] in (ref, resolved)]
    if by_path:
        return by_path
    return [d for d in documents if d["filename"] == ref]
