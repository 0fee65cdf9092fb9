"""Configuration commands.

    sluice config resolve: Print the effective configuration for a target
    sluice config validate: Check that the configuration can drive a pipeline

Example:
    $ sluice --config sluice.yaml config resolve --target staging-eu
    $ sluice config validate
"""

from __future__ import annotations

import click
import yaml

from sluice.cli.utils import (
    ExitCode,
    dump_json,
    error_exit,
    load_pipeline_config,
    sluice_errors,
    success,
)
from sluice.gates.evaluator import GateEvaluator
from sluice.schemas.gates import GateStage


@click.group(name="config", help="Inspect and validate the pipeline configuration.")
def config_group() -> None:
    """Configuration command group."""


@config_group.command(name="resolve", help="Print the effective configuration.")
@click.option("--target", default=None, metavar="NAME", help="Apply a target's overrides.")
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["yaml", "json"], case_sensitive=False),
    default="yaml",
    show_default=True,
    help="Output format.",
)
@click.pass_context
def resolve_command(ctx: click.Context, target: str | None, output_format: str) -> None:
    config = load_pipeline_config(ctx)
    if target is not None:
        with sluice_errors():
            config = config.for_target(target)

    data = config.model_dump(mode="json", exclude={"targets"})
    if output_format.lower() == "json":
        success(dump_json(data))
    else:
        success(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())


@config_group.command(name="validate", help="Check the configuration for a runnable pipeline.")
@click.pass_context
def validate_command(ctx: click.Context) -> None:
    """Validate the schema and require a production signature check."""
    config = load_pipeline_config(ctx)
    with sluice_errors():
        gates = GateEvaluator.from_config(config)
    if not gates.has_signature_check(GateStage.PRODUCTION):
        error_exit(
            "Production gate has no signature-verification check",
            exit_code=ExitCode.CONFIGURATION_ERROR,
        )
    stages = ", ".join(
        f"{stage.value}={len(gates.checks_for(stage))}" for stage in GateStage
    )
    success(f"Configuration valid for project '{config.project}' ({stages})")


__all__ = ["config_group"]
