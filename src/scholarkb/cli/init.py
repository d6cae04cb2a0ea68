"""scholarkb init — create a workspace.

Creates:
  .scholarkb.db             — empty knowledge base with schema
  scholarkb.yaml            — workspace config template (commented defaults)
  ~/.scholarkb/config.yaml  — global model config (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from scholarkb.cli.common import console, open_db
from scholarkb.config import ensure_global_config

_DB_NAME = ".scholarkb.db"
_CONFIG_NAME = "scholarkb.yaml"

_CONFIG_TEMPLATE = """\
# scholarkb workspace configuration.
# Values here override ~/.scholarkb/config.yaml; SCHOLARKB_* env vars override both.
# API keys are read from environment variables only (see embedding.api_key_env).

chunking:
  chunk_size: 512
  chunk_overlap: 50
  strategy: semantic        # fixed | semantic | paragraph

embedding:
  provider: openai          # openai | ollama | custom
  model: text-embedding-3-small
  dimensions: 1536
  batch_size: 32

retrieval:
  max_results: 5
  score_threshold: 0.1
  use_hybrid_search: true
  bm25_weight: 0.3
  vector_weight: 0.7

advanced:
  enable_context_routing: true
  enable_llm_routing: true
  enable_query_rewrite: false
  enable_bilingual_search: false
  enable_rerank: false
"""


def init_cmd(
    workspace: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
    global_config: Annotated[
        Path | None,
        typer.Option("--global-config", hidden=True, help="Override global config path."),
    ] = None,
) -> None:
    """Initialize a scholarkb workspace (database + config template)."""
    workspace = workspace.resolve()
    workspace.mkdir(parents=True, exist_ok=True)

    db_path = workspace / _DB_NAME
    if db_path.exists():
        console.print(f"[yellow]⚠[/]  {db_path} already exists; schema is brought up to date.")
    open_db(db_path).close()
    console.print(f"  [green]✓[/] {_DB_NAME}")

    config_path = workspace / _CONFIG_NAME
    if config_path.exists():
        console.print(f"  [dim]↷ {_CONFIG_NAME} exists, left unchanged[/]")
    else:
        config_path.write_text(_CONFIG_TEMPLATE, encoding="utf-8")
        console.print(f"  [green]✓[/] {_CONFIG_NAME}")

    cfg_path = ensure_global_config(global_config)
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    console.print("\n[bold green]✓ Workspace initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. scholarkb library create <name>")
    console.print("  2. scholarkb add <files> --library <name>")
    console.print('  3. scholarkb search "<question>"')
