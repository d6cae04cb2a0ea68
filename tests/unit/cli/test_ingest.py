"""Tests for scholarkb add / process."""

from __future__ import annotations

import json
import sqlite3

from scholarkb.cli.ingest import _parse_meta, expand_paths
from scholarkb.cli.main import app


def test_add_indexes_without_embedding_key(runner, paper):
    result = runner.invoke(app, ["add", str(paper), "--library", "papers"])

    assert result.exit_code == 0, result.output
    assert "chunks" in result.output
    assert "Embeddings skipped" in result.output
    assert "scholarkb embed" in result.output


def test_add_unchanged_file_skipped(runner, paper):
    runner.invoke(app, ["add", str(paper), "-l", "papers"])
    result = runner.invoke(app, ["add", str(paper), "-l", "papers"])
    assert result.exit_code == 0
    assert "Skipped (unchanged)" in result.output


def test_add_unknown_library(runner, paper):
    result = runner.invoke(app, ["add", str(paper), "-l", "nope"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_add_unsupported_file(runner, workspace):
    (workspace / "data.xyz").write_text("x", encoding="utf-8")
    result = runner.invoke(app, ["add", "data.xyz", "-l", "papers"])
    assert result.exit_code == 0
    assert "Unsupported file type" in result.output
    assert "No supported files" in result.output


def test_add_rejects_traversal(runner, workspace):
    result = runner.invoke(app, ["add", "../secret.md", "-l", "papers"])
    assert result.exit_code == 1
    assert "not allowed" in result.output


def test_add_pending_then_process(runner, paper):
    added = runner.invoke(app, ["add", str(paper), "-l", "papers", "--pending"])
    assert "Registered as pending" in added.output

    result = runner.invoke(app, ["process", "-l", "papers", "--no-embed"])
    assert result.exit_code == 0, result.output
    assert "Processed 1 pending" in result.output


def test_add_stores_bib_key_and_meta(runner, paper, workspace):
    result = runner.invoke(
        app,
        [
            "add", str(paper), "-l", "papers", "--no-embed",
            "--bib-key", "smith2020", "--meta", "venue=ICML",
        ],
    )
    assert result.exit_code == 0, result.output

    conn = sqlite3.connect(workspace / ".scholarkb.db")
    try:
        bib_key, metadata = conn.execute("SELECT bib_key, metadata FROM documents").fetchone()
    finally:
        conn.close()
    assert bib_key == "smith2020"
    assert json.loads(metadata)["venue"] == "ICML"


def test_bib_key_requires_single_file(runner, workspace):
    docs = workspace / "docs"
    docs.mkdir()
    (docs / "a.md").write_text("# A\n\nalpha", encoding="utf-8")
    (docs / "b.md").write_text("# B\n\nbeta", encoding="utf-8")
    result = runner.invoke(app, ["add", "docs", "-l", "papers", "--bib-key", "k"])
    assert result.exit_code == 1
    assert "single file" in result.output


def test_add_directory(runner, workspace):
    docs = workspace / "docs"
    docs.mkdir()
    (docs / "a.md").write_text("# A\n\nalpha text", encoding="utf-8")
    (docs / "b.txt").write_text("beta text", encoding="utf-8")
    result = runner.invoke(app, ["add", "docs", "-l", "papers", "--no-embed"])
    assert result.exit_code == 0, result.output
    assert result.output.count("chunks") == 2


# ------------------------------------------------------------------
# Path expansion
# ------------------------------------------------------------------


def test_expand_paths_directory_filters(tmp_path):
    docs = tmp_path / "docs"
    (docs / "sub").mkdir(parents=True)
    for name in ("a.md", "b.txt", "skip.md", "image.png"):
        (docs / name).write_text("x", encoding="utf-8")
    (docs / "sub" / "c.tex").write_text("x", encoding="utf-8")

    flat = expand_paths([str(docs)], recursive=False, exclude=["skip.*"])
    deep = expand_paths([str(docs)], recursive=True, exclude=["skip.*"])

    resolved = docs.resolve()
    assert flat == [resolved / "a.md", resolved / "b.txt"]
    assert deep == [resolved / "a.md", resolved / "b.txt", resolved / "sub" / "c.tex"]


def test_parse_meta_ignores_malformed():
    assert _parse_meta(["venue=ICML", "broken", "=x", "k = v "]) == {"venue": "ICML", "k": "v"}
