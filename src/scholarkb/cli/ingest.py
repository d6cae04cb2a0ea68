"""scholarkb add — ingest files into a library.

Source dispatch by extension:
  .tex .latex              → LaTeX segmenter (math/citation-safe)
  .md .markdown            → Markdown segmenter
  .txt .text .rst .org     → plain text
  .pdf                     → pypdf text extraction, then plain text
  .bib                     → BibTeX entries (citation index)
  directory                → expanded to individual files (--recursive for subdirs)

Unchanged files are skipped; changed files replace their previous version.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from scholarkb.cli.common import DEFAULT_DB, console, service_for
from scholarkb.cli.errors import (
    err_failed,
    err_library_not_found,
    err_path_rejected,
    err_unsupported_file,
    warn_missing_embeddings,
)
from scholarkb.errors import PathSecurityError
from scholarkb.ingest.paths import validate_input_path
from scholarkb.ingest.segmenter import SUPPORTED_EXTENSIONS, detect_format
from scholarkb.service import KnowledgeService

_MAX_DEPTH = 10


def add_cmd(
    paths: Annotated[
        list[str],
        typer.Argument(help="Files or directories to ingest."),
    ],
    library: Annotated[
        str,
        typer.Option("--library", "-l", help="Target library name or id."),
    ],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
    bib_key: Annotated[
        str | None,
        typer.Option("--bib-key", help="Citation key of the document (single file only)."),
    ] = None,
    citation: Annotated[
        str | None,
        typer.Option("--citation", help="Formatted citation text (single file only)."),
    ] = None,
    meta: Annotated[
        list[str] | None,
        typer.Option("--meta", help="Extra metadata key=value (repeatable)."),
    ] = None,
    pending: Annotated[
        bool,
        typer.Option("--pending", help="Register only; index later with 'scholarkb process'."),
    ] = False,
    no_embed: Annotated[
        bool,
        typer.Option("--no-embed", help="Skip embeddings; run 'scholarkb embed' later."),
    ] = False,
    recursive: Annotated[
        bool,
        typer.Option("--recursive", "-r", help="Recurse into subdirectories."),
    ] = False,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob pattern to exclude (repeatable)."),
    ] = None,
) -> None:
    """Ingest documents into a library."""
    try:
        files = expand_paths(paths, recursive=recursive, exclude=exclude or [])
    except PathSecurityError as exc:
        raise typer.Exit(1) from exc

    if not files:
        console.print("[yellow]No supported files found to ingest.[/]")
        raise typer.Exit(0)
    if (bib_key or citation) and len(files) > 1:
        console.print("[red]Error:[/] --bib-key/--citation apply to a single file only.")
        raise typer.Exit(1)

    metadata = _parse_meta(meta or [])
    failures = 0
    with service_for(db) as service:
        if not service.get_library(library)["success"]:
            console.print(err_library_not_found(library))
            raise typer.Exit(1)
        for path in files:
            result = _add_one(
                service,
                path,
                library,
                bib_key=bib_key,
                citation=citation,
                metadata=metadata,
                pending=pending,
                embed=not no_embed,
            )
            if not result["success"]:
                failures += 1
        missing = service.get_diagnostics(library).get("missingEmbeddings", 0)

    if missing and not pending:
        console.print(f"\n{warn_missing_embeddings(missing)}")
    if failures:
        raise typer.Exit(1)


def _add_one(
    service: KnowledgeService,
    path: Path,
    library: str,
    *,
    bib_key: str | None,
    citation: str | None,
    metadata: dict[str, Any],
    pending: bool,
    embed: bool,
) -> dict[str, Any]:
    console.print(f"\n[bold]→ {path}[/]")
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console,
    ) as prog:
        prog.add_task("Indexing…", total=None)
        result = service.add_document(
            path,
            library,
            bib_key=bib_key,
            citation_text=citation,
            metadata=metadata or None,
            process_immediately=not pending,
            embed=embed,
        )

    if not result["success"]:
        console.print(f"  {err_failed('Ingest', result['error'])}")
    elif result.get("skipped"):
        console.print(f"  [dim]↷ Skipped ({result['reason']})[/]")
    elif result.get("status") == "pending":
        console.print("  [dim]Registered as pending[/]")
    else:
        console.print(f"  [green]✓[/] {result['chunkCount']} chunks")
        embedding = result.get("embedding")
        if embedding:
            if embedding.get("skipped"):
                console.print(f"  [yellow]⚠ Embeddings skipped:[/] {embedding['skipped']}")
            else:
                line = f"  [green]✓[/] {embedding['processed']} embedded"
                if embedding["failed"]:
                    line += f", [yellow]{embedding['failed']} failed[/]"
                console.print(line)
    return result


def process_cmd(
    library: Annotated[
        str | None,
        typer.Option("--library", "-l", help="Only this library (default: all)."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
    no_embed: Annotated[
        bool,
        typer.Option("--no-embed", help="Skip embedding generation."),
    ] = False,
) -> None:
    """Index documents registered with --pending."""
    with service_for(db) as service:
        result = service.process_pending(library, embed=not no_embed)
    if not result["success"]:
        console.print(err_failed("Process", result["error"]))
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Processed {result['processed']} pending document(s)")
    if result["failed"]:
        console.print(f"  [yellow]{result['failed']} failed[/]; see 'scholarkb status'")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# Path expansion
# ------------------------------------------------------------------


def expand_paths(paths: list[str], recursive: bool, exclude: list[str]) -> list[Path]:
    """Validate *paths* and expand directories to supported files.

    Raises:
        PathSecurityError: If any path contains a traversal sequence.
    """
    result: list[Path] = []
    for raw in paths:
        try:
            path = validate_input_path(raw)
        except PathSecurityError:
            console.print(err_path_rejected(raw))
            raise
        if path.is_dir():
            files = _scan_dir(path, recursive=recursive, exclude=exclude, depth=0)
            if not files:
                console.print(f"[yellow]No supported files found in directory:[/] {raw}")
            result.extend(files)
        elif detect_format(path) is None:
            console.print(err_unsupported_file(raw, sorted(SUPPORTED_EXTENSIONS)))
        else:
            result.append(path)
    return result


def _scan_dir(directory: Path, recursive: bool, exclude: list[str], depth: int) -> list[Path]:
    """Return supported files in *directory* (optionally recursive)."""
    if depth > _MAX_DEPTH:
        return []
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        return []
    for entry in entries:
        if any(fnmatch.fnmatch(entry.name, pat) for pat in exclude):
            continue
        if entry.is_file() and entry.suffix.lower() in SUPPORTED_EXTENSIONS:
            files.append(entry)
        elif entry.is_dir() and recursive:
            files.extend(_scan_dir(entry, recursive=recursive, exclude=exclude, depth=depth + 1))
    return files


def _parse_meta(items: list[str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if sep and key.strip():
            metadata[key.strip()] = value.strip()
        else:
            console.print(f"[yellow]Ignoring malformed --meta '{item}' (expected key=value)[/]")
    return metadata
