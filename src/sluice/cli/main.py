"""Main entry point for the sluice CLI.

Commands:
    sluice event FILE: Apply inbound events to the state machine
    sluice resume: Resume interrupted production promotions
    sluice status: Lifecycle state of Changes
    sluice audit CHANGE_ID: Promotion history of a Change
    sluice releases: Release descriptors
    sluice config resolve|validate: Configuration inspection
    sluice version next: Next semantic version from commit messages

Example:
    $ sluice --help
    $ sluice --config sluice.yaml event pr-opened.json
    $ SLUICE_DATABASE_URL=sqlite:///promotions.db sluice status
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version
from pathlib import Path

import click

from sluice.cli.config import config_group
from sluice.cli.events import event_command, resume_command
from sluice.cli.status import audit_command, releases_command, status_command
from sluice.cli.utils import ExitCode, error
from sluice.cli.version import version_group
from sluice.errors import SluiceError
from sluice.telemetry.logging import configure_logging


def _get_version() -> str:
    """Get the sluice package version, or 'unknown' if not installed."""
    try:
        return get_version("sluice")
    except Exception:
        return "unknown"


@click.group(
    name="sluice",
    help="sluice - Release-promotion orchestrator.",
    epilog="Use 'sluice <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="sluice",
    message="%(prog)s %(version)s",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="SLUICE_CONFIG",
    default=None,
    help="Pipeline configuration file (default: ./sluice.yaml when present).",
)
@click.option(
    "--target",
    envvar="SLUICE_TARGET",
    default=None,
    metavar="NAME",
    help="Apply a named target's configuration overrides.",
)
@click.option(
    "--database-url",
    envvar="SLUICE_DATABASE_URL",
    default=None,
    metavar="URL",
    help="SQLAlchemy URL of the promotion store (overrides the configuration).",
)
@click.option(
    "--log-level",
    envvar="SLUICE_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.option("--log-json/--log-console", default=True, help="Log rendering.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    target: str | None,
    database_url: str | None,
    log_level: str,
    log_json: bool,
) -> None:
    """Root command group for the sluice CLI."""
    configure_logging(log_level, json_output=log_json)
    ctx.ensure_object(dict)
    ctx.obj.update(
        {
            "config_path": config_path,
            "target": target,
            "database_url": database_url,
        }
    )


cli.add_command(event_command)
cli.add_command(resume_command)
cli.add_command(status_command)
cli.add_command(audit_command)
cli.add_command(releases_command)
cli.add_command(config_group)
cli.add_command(version_group)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the sluice CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except SluiceError as e:
        error(str(e))
        sys.exit(e.exit_code)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(ExitCode.GENERAL_ERROR)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    main()
