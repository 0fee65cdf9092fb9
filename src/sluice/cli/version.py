"""Versioning commands.

    sluice version next: Compute the next version from commit messages

Example:
    $ sluice version next --last 1.2.3 -m "feat: add search" -m "fix: typo"
    1.3.0
"""

from __future__ import annotations

import click

from sluice.cli.utils import ExitCode, error_exit, info, success
from sluice.versioning import classify_commit, determine_bump, next_version


@click.group(name="version", help="Semantic versioning helpers.")
def version_group() -> None:
    """Versioning command group."""


@version_group.command(name="next", help="Compute the next release version.")
@click.option("--last", "last_version", default="0.0.0", show_default=True, help="Last version.")
@click.option(
    "-m",
    "--message",
    "messages",
    multiple=True,
    required=True,
    help="Commit message (repeatable).",
)
def next_command(last_version: str, messages: tuple[str, ...]) -> None:
    """Print the next version, or exit 1 when no release is due."""
    classifications = [classify_commit(m) for m in messages]
    try:
        version = next_version(last_version, classifications)
    except ValueError as e:
        error_exit(str(e), exit_code=ExitCode.VALIDATION_ERROR)

    if version is None:
        info("No releasable commits")
        raise SystemExit(ExitCode.GENERAL_ERROR)

    bump = determine_bump(classifications)
    info(f"{bump.value if bump else 'none'} bump from {last_version}")
    success(version)


__all__ = ["version_group"]
