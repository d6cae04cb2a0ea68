"""scholarkb CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from scholarkb.cli.ingest import add_cmd, process_cmd
from scholarkb.cli.init import init_cmd
from scholarkb.cli.library import library_app
from scholarkb.cli.remove import remove_cmd
from scholarkb.cli.repair import embed_cmd, rebuild_fts_cmd
from scholarkb.cli.search import citations_cmd, route_cmd, search_cmd
from scholarkb.cli.status import status_cmd
from scholarkb.logging_config import configure_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("scholarkb")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"scholarkb {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="scholarkb",
    help=(
        "scholarkb — scholarly knowledge base with hybrid retrieval.\n\n"
        "  scholarkb add     Ingest LaTeX, Markdown, text, PDF and BibTeX files.\n"
        "  scholarkb search  Hybrid (vector + keyword) search with context routing."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging to stderr."),
    ] = False,
) -> None:
    """scholarkb — scholarly knowledge base with hybrid retrieval."""
    configure_logging(verbose)


app.command("init")(init_cmd)
app.command("add")(add_cmd)
app.command("process")(process_cmd)
app.command("remove")(remove_cmd)
app.command("search")(search_cmd)
app.command("route")(route_cmd)
app.command("citations")(citations_cmd)
app.command("status")(status_cmd)
app.command("rebuild-fts")(rebuild_fts_cmd)
app.command("embed")(embed_cmd)
app.add_typer(library_app, name="library")


@app.command("version")
def version_cmd() -> None:
    """Show the installed scholarkb version."""
    typer.echo(f"scholarkb {_installed_version()}")


if __name__ == "__main__":
    app()
