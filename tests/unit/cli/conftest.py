"""Fixtures for CLI tests: an isolated workspace with one library."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

from scholarkb.cli.main import app

PAPER_MD = """\
# Attention Models

Transformers rely on self attention to relate tokens.

## Training

Residual connections stabilise deep network training.
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_cli_logging():
    """configure_logging() binds handlers to the runner's streams; drop them afterwards."""
    yield
    logger = logging.getLogger("scholarkb")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def workspace(tmp_path, monkeypatch, runner) -> Path:
    """tmp_path as cwd with a 'papers' library and no embedding key."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = runner.invoke(app, ["library", "create", "papers"])
    assert result.exit_code == 0, result.output
    return tmp_path


@pytest.fixture
def paper(workspace) -> Path:
    path = workspace / "paper.md"
    path.write_text(PAPER_MD, encoding="utf-8")
    return path
