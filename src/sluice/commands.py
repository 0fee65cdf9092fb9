"""Templated external commands.

Checks, provisioners and deployers are configured as command templates with
``${NAME}`` placeholders. Commands are split with :mod:`shlex` and run without
a shell.
"""

from __future__ import annotations

import shlex
import subprocess
from collections.abc import Mapping
from string import Template

import structlog

from sluice.errors import InfrastructureError

logger = structlog.get_logger(__name__)

# Exit codes reported when the command itself could not be started
_NOT_RUNNABLE_EXIT_CODES = frozenset({126, 127})


def render_command(command: str, substitutions: Mapping[str, str]) -> list[str]:
    """Substitute placeholders and split into argv.

    Unknown placeholders are left untouched.

    Example:
        >>> render_command("deploy --ref ${ARTIFACT_REF}", {"ARTIFACT_REF": "abc123"})
        ['deploy', '--ref', 'abc123']
    """
    return shlex.split(Template(command).safe_substitute(substitutions))


def tail(text: str, lines: int = 5) -> str:
    """Last ``lines`` non-trailing lines of command output."""
    return "\n".join(text.strip().splitlines()[-lines:])


def run_command(
    command: str,
    substitutions: Mapping[str, str],
    *,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a templated command and return the completed process.

    A non-zero exit code is returned to the caller, except for codes that mean
    the command could not start.

    Raises:
        InfrastructureError: If the executable is missing or cannot start.
        TimeoutError: If the command exceeds the timeout.
    """
    argv = render_command(command, substitutions)
    if not argv:
        raise InfrastructureError("command runner", "empty command")

    logger.debug("command_started", executable=argv[0], timeout=timeout)
    try:
        result = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise InfrastructureError(argv[0], f"executable not found: {e}") from e
    except PermissionError as e:
        raise InfrastructureError(argv[0], f"not executable: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise TimeoutError(f"{argv[0]} timed out after {timeout}s") from e

    if result.returncode in _NOT_RUNNABLE_EXIT_CODES:
        raise InfrastructureError(argv[0], tail(result.stderr) or "command not runnable")
    return result


def run_or_raise(
    command: str,
    substitutions: Mapping[str, str],
    *,
    component: str,
    timeout: float | None = None,
) -> str:
    """Run a templated command; a non-zero exit is an infrastructure error.

    Returns:
        Captured standard output.
    """
    result = run_command(command, substitutions, timeout=timeout)
    if result.returncode != 0:
        raise InfrastructureError(
            component,
            f"exit code {result.returncode}: {tail(result.stderr) or tail(result.stdout)}",
        )
    return result.stdout


__all__ = ["render_command", "run_command", "run_or_raise", "tail"]
