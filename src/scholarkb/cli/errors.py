"""scholarkb rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from scholarkb.cli.errors import err_no_db
    console.print(err_no_db(".scholarkb.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_db(db_path: str = ".scholarkb.db") -> str:
    """No workspace database found."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  scholarkb init"
    )


def err_config(message: str) -> str:
    """Configuration could not be loaded or is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration.\n  {message}\n"
        "  Fix scholarkb.yaml or ~/.scholarkb/config.yaml and retry."
    )


def err_library_not_found(name: str) -> str:
    return (
        f"[red]Error:[/] Library '{name}' not found.\n"
        "  Run:  scholarkb library list  to see existing libraries."
    )


def err_unsupported_file(path: str, extensions: list[str]) -> str:
    return (
        f"[red]Error:[/] Unsupported file type: '{path}'\n"
        f"  Supported: {', '.join(extensions)}"
    )


def err_path_rejected(path: str) -> str:
    """Ingestion path contains a traversal sequence."""
    return (
        f"[red]Error:[/] Path is not allowed: '{path}'\n"
        "  Paths containing '../' or '..\\' are rejected. Use an absolute path."
    )


def err_failed(action: str, message: str) -> str:
    """Generic failure of *action* reported by the service layer."""
    hint = ""
    lowered = message.lower()
    if "api key" in lowered:
        hint = "\n  Set the provider's API key environment variable and retry."
    elif "not found" in lowered and "library" in lowered:
        hint = "\n  Run:  scholarkb library list"
    return f"[red]Error:[/] {action} failed: {message}{hint}"


def warn_missing_embeddings(count: int) -> str:
    """Chunks without embeddings — vector search is degraded."""
    return (
        f"[yellow]⚠[/] {count} chunk(s) have no embedding; vector search is degraded.\n"
        "  Run:  scholarkb embed"
    )
