"""CLI utility functions and error handling.

This module provides shared utilities for the sluice CLI, including:
- Exit code constants aligned with the SluiceError hierarchy
- Output helpers for consistent stderr/stdout usage
- Loading of configuration and store from the root command context

Example:
    from sluice.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("File not found", exit_code=ExitCode.FILE_NOT_FOUND, path=str(path))
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from sluice.config import DEFAULT_CONFIG_FILENAME, PipelineConfig, load_config
from sluice.errors import SluiceError
from sluice.store import PromotionStore
from sluice.telemetry.tracing import sanitize_error_message

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes for CLI commands.

    Codes 2 and 5-10 match the ``exit_code`` of the corresponding SluiceError
    subclass so CI pipelines can branch on them.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    CONFIGURATION_ERROR = 2
    """Configuration missing or invalid."""

    FILE_NOT_FOUND = 3
    """Required file not found."""

    VALIDATION_ERROR = 4
    """Input validation failed."""

    INFRASTRUCTURE_ERROR = 5
    """A dependency could not be reached."""

    DEPLOYMENT_ERROR = 6
    """A deployment reported failure."""

    CONFLICT = 7
    """Namespace or production lane conflict."""

    GATE_FAILURE = 8
    """A gate failed, or a Change ended in Failed."""

    INVALID_TRANSITION = 9
    """Transition not allowed from the current state."""

    VERSION_CONFLICT = 10
    """Computed version does not advance past the released version."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("File not found", path="/path/to/file")
        # Output: Error: File not found (path=/path/to/file)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Used for progress updates that should not be captured by stdout
    redirection.
    """
    click.echo(message, err=True)


@contextmanager
def sluice_errors() -> Iterator[None]:
    """Map SluiceError to an error message and its exit code."""
    try:
        yield
    except SluiceError as e:
        error_exit(sanitize_error_message(str(e)), exit_code=e.exit_code)


def load_pipeline_config(ctx: click.Context) -> PipelineConfig:
    """Load the configuration selected by the root ``--config``/``--target`` options.

    Without ``--config``, ``sluice.yaml`` in the working directory is used when
    present and the defaults otherwise.
    """
    obj: dict[str, Any] = ctx.find_root().obj or {}
    path: Path | None = obj.get("config_path")
    target: str | None = obj.get("target")

    if path is None:
        default = Path.cwd() / DEFAULT_CONFIG_FILENAME
        path = default if default.is_file() else None

    with sluice_errors():
        if path is None:
            config = PipelineConfig()
            return config.for_target(target) if target else config
        if not path.is_file():
            error_exit("Configuration not found", exit_code=ExitCode.FILE_NOT_FOUND, path=str(path))
        return load_config(path, target=target)


def open_store(ctx: click.Context, config: PipelineConfig | None = None) -> PromotionStore:
    """Open the promotion store from ``--database-url`` or the configuration."""
    obj: dict[str, Any] = ctx.find_root().obj or {}
    url = obj.get("database_url") or (config or load_pipeline_config(ctx)).database_url
    with sluice_errors():
        return PromotionStore.from_url(url)


def format_table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    """Render rows as a left-aligned plain-text table."""
    cells = [[str(h) for h in headers]] + [["" if v is None else str(v) for v in r] for r in rows]
    widths = [max(len(row[i]) for row in cells) for i in range(len(headers))]
    lines = ["  ".join(v.ljust(w) for v, w in zip(row, widths)).rstrip() for row in cells]
    lines.insert(1, "  ".join("-" * w for w in widths))
    return "\n".join(lines)


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


__all__ = [
    "ExitCode",
    "dump_json",
    "error",
    "error_exit",
    "format_table",
    "info",
    "load_pipeline_config",
    "open_store",
    "sluice_errors",
    "success",
]
