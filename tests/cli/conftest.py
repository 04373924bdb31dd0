"""Shared fixtures for CLI tests."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from mongoshape.cli import app

if TYPE_CHECKING:
    from click.testing import Result

HERE = Path(__file__).parent


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def sample_models_path() -> str:
    return str(HERE / "sample_models.py")


@pytest.fixture
def broken_models_path() -> str:
    return str(HERE / "broken_models.py")


def invoke(runner: CliRunner, args: list[str], config: str | None = None) -> "Result":
    """Invoke the CLI, injecting --config before the subcommand when given."""
    if config:
        args = ["--config", config] + args
    return runner.invoke(app, args, catch_exceptions=False)
