"""sluice command-line interface."""

from __future__ import annotations

from sluice.cli.main import cli, main

__all__ = ["cli", "main"]
