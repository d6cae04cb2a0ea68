"""scholarkb search / route / citations — query the knowledge base.

Usage:
  scholarkb search "what is the attention mechanism" --library papers
  scholarkb search "compare the two training setups" --context
  scholarkb route "summarize the paper"
  scholarkb citations papers --query vaswani
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from scholarkb.cli.common import DEFAULT_DB, check, console, service_for

_HINTS: dict[str, str] = {
    "empty_index": "Nothing is indexed yet. Run:  scholarkb add <files> --library <name>",
    "no_embeddings": "No embeddings stored yet. Run:  scholarkb embed",
    "no_match": "No passage matched the query above the score threshold.",
}


def search_cmd(
    query: Annotated[str, typer.Argument(help="Natural-language query.")],
    library: Annotated[
        list[str] | None,
        typer.Option("--library", "-l", help="Library name or id (repeatable; default: all)."),
    ] = None,
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", help="Number of results (when context routing is off)."),
    ] = None,
    threshold: Annotated[
        float | None,
        typer.Option("--threshold", help="Minimum score 0-1."),
    ] = None,
    mode: Annotated[
        str | None,
        typer.Option("--mode", help="Retriever: hybrid | vector | keyword."),
    ] = None,
    context: Annotated[
        bool,
        typer.Option("--context", help="Print results as LLM-ready reference blocks."),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the raw result as JSON."),
    ] = False,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """Search one or more libraries."""
    if mode is not None and mode not in ("hybrid", "vector", "keyword"):
        console.print(f"[red]Error:[/] Unknown --mode '{mode}'. Use hybrid, vector or keyword.")
        raise typer.Exit(1)

    with service_for(db) as service:
        if context:
            result = service.build_context(query, library, top_k)
        else:
            result = service.search(query, library, top_k, threshold, mode)
    check(result, "Search")

    if as_json:
        typer.echo(json.dumps(result, ensure_ascii=False, indent=2))
        return

    decision = result.get("contextDecision")
    if decision is not None and decision["contextType"] == "none":
        console.print(
            f"[dim]No retrieval needed ({decision['reason']}, "
            f"confidence {decision['confidence']:.2f}).[/]"
        )
        return

    results = result["results"]
    if not results:
        hint = result.get("noResultsHint", "no_match")
        console.print(f"[yellow]No results.[/] {_HINTS.get(hint, '')}")
        return

    if context:
        console.print(escape(result["context"]))
        if result["citations"]:
            console.print("\n[bold]Citations[/]")
            for citation in result["citations"]:
                console.print(escape(f"  [{citation['bibKey']}] {citation['text']}"))
        console.print(f"\n[dim]{result['totalTokens']:,} tokens[/]")
        return

    _print_results(results)
    for warning in result.get("warnings", []):
        console.print(f"[yellow]⚠[/] {warning}")


def route_cmd(
    query: Annotated[str, typer.Argument(help="Query to classify.")],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """Show how much context a query needs (none / partial / full)."""
    with service_for(db, create=True) as service:
        result = check(service.route(query), "Route")

    decision = result["decision"]
    params = result["retrievalParams"]
    lines = [
        f"Context:     [bold]{decision['contextType']}[/]",
        f"Reason:      {decision['reason']}",
        f"Chunks:      {decision['suggestedChunkCount']}",
        f"Multi-doc:   {'yes' if decision['needsMultiDocument'] else 'no'}",
        f"Confidence:  {decision['confidence']:.2f} [dim]({decision['source']})[/]",
        f"Retrieval:   top_k={params['topK']}  adjacent={params['includeAdjacent']}  "
        f"diversify={params['diversify']}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Context Routing[/]", expand=False))


def citations_cmd(
    library: Annotated[str, typer.Argument(help="Library name or id.")],
    query: Annotated[
        str,
        typer.Option("--query", "-q", help="Filter by key, author, title or year."),
    ] = "",
    limit: Annotated[
        int,
        typer.Option("--limit", help="Maximum entries to show."),
    ] = 20,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .scholarkb.db."),
    ] = DEFAULT_DB,
) -> None:
    """List a library's BibTeX entries, most-cited first."""
    with service_for(db) as service:
        citations = check(service.search_citations(library, query, limit), "Citations")[
            "citations"
        ]

    if not citations:
        console.print("[yellow]No citations found.[/]  Run:  scholarkb add refs.bib -l <name>")
        return

    table = Table(title="Citations", show_header=True, header_style="bold")
    table.add_column("Key", style="bold")
    table.add_column("Year", style="dim")
    table.add_column("Title")
    table.add_column("Cited", justify="right")
    for c in citations:
        table.add_row(escape(c["key"]), c["year"], escape(c["title"]), str(c["usageCount"]))
    console.print(table)


def _print_results(results: list[dict[str, Any]]) -> None:
    table = Table(show_header=True, header_style="bold", show_lines=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Source")
    table.add_column("Passage")
    for i, r in enumerate(results, start=1):
        meta = r["metadata"]
        source = escape(r["filename"] or r["source"])
        if meta.get("section"):
            source += f"\n§ {escape(meta['section'])}"
        if meta.get("bibKey"):
            source += escape(f"\n[{meta['bibKey']}]")
        text = r["content"].strip().replace("\n", " ")
        if len(text) > 300:
            text = text[:300] + "…"
        score = f"{r['score'] * 100:.1f}%"
        if meta.get("adjacent"):
            score += "\n[dim]adjacent[/]"
        table.add_row(str(i), score, source, escape(text))
    console.print(table)
