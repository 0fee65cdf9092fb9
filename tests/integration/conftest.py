"""Integration test fixtures for the sluice CLI.

These tests run the real CLI against a YAML configuration whose checks are
real commands, with a file-backed SQLite store.

For shared fixtures across all test tiers, see ../conftest.py.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
from click.testing import CliRunner

CONFIG_TEMPLATE = """\
project: shop
database_url: "sqlite:///{db}"
retry:
  max_attempts: 1
stages:
  lint:
    checks:
      - name: ruff
        command: "sh -c 'test ${{CHANGE_ID}} != PR-BAD'"
  unit_test:
    checks:
      - name: pytest
        command: "true"
  production:
    checks:
      - name: cosign
        kind: signature
        command: "true"
targets:
  ci:
    project: shop-ci
"""


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """CLI runs bind structlog to the runner's stderr; restore defaults afterwards."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "promotions.db"


@pytest.fixture
def config_file(tmp_path: Path, db_path: Path) -> Path:
    path = tmp_path / "sluice.yaml"
    path.write_text(CONFIG_TEMPLATE.format(db=db_path))
    return path


@pytest.fixture
def write_events(tmp_path: Path) -> Callable[..., Path]:
    """Write events to a JSON file and return its path."""
    counter = iter(range(1, 1000))

    def _write(*events: dict[str, Any]) -> Path:
        path = tmp_path / f"events-{next(counter)}.json"
        path.write_text(json.dumps(list(events)))
        return path

    return _write
