"""Event processing commands.

    sluice event FILE: Apply one event, or a list of events, from YAML/JSON
    sluice resume: Drive promotions interrupted by a restart

Example:
    $ sluice event events/pr-opened.json
    $ cat events.yaml | sluice event - --output json
    $ sluice resume
"""

from __future__ import annotations

from typing import IO, Any

import click
import structlog
import yaml
from pydantic import ValidationError

from sluice.cli.utils import (
    ExitCode,
    dump_json,
    error_exit,
    format_table,
    info,
    load_pipeline_config,
    open_store,
    sluice_errors,
    success,
)
from sluice.machine import PromotionStateMachine
from sluice.notifications import build_sink
from sluice.schemas.change import LifecycleState
from sluice.schemas.events import ChangeEvent
from sluice.schemas.records import PromotionRecord

logger = structlog.get_logger(__name__)


def build_machine(ctx: click.Context) -> PromotionStateMachine:
    """Wire a state machine from the root command options."""
    config = load_pipeline_config(ctx)
    store = open_store(ctx, config)
    with sluice_errors():
        machine = PromotionStateMachine.from_config(
            config,
            store,
            notifier=build_sink(config.webhooks),
        )
    ctx.call_on_close(machine.close)
    return machine


def parse_events(text: str) -> list[ChangeEvent]:
    """Parse a YAML or JSON document holding one event or a list of events.

    Raises:
        ValueError: If the document is not an event mapping or a list of them.
        ValidationError: If an event does not match the ChangeEvent schema.
    """
    data: Any = yaml.safe_load(text)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError("expected an event mapping or a list of events")
    return [ChangeEvent.model_validate(item) for item in data]


def _render(records: list[PromotionRecord], output_format: str) -> str:
    if output_format == "json":
        return dump_json([r.model_dump(mode="json") for r in records])
    return format_table(
        ["CHANGE", "FROM", "TO", "EVENT", "FAST-TRACK", "DETAIL"],
        [
            [
                r.change_id,
                r.from_state.value if r.from_state else "-",
                r.to_state.value,
                r.event_id,
                "yes" if r.fast_track else "",
                r.detail,
            ]
            for r in records
        ],
    )


def _exit_if_failed(records: list[PromotionRecord], strict: bool) -> None:
    failed = sorted({r.change_id for r in records if r.to_state is LifecycleState.FAILED})
    if strict and failed:
        error_exit("Promotion failed", exit_code=ExitCode.GATE_FAILURE, changes=",".join(failed))


@click.command(
    name="event",
    help="Apply inbound events to the promotion state machine.",
    epilog="""
Exit Codes:
    0  - Events applied
    2  - Configuration error
    4  - Event document invalid
    8  - A Change ended in Failed (with --strict)
""",
)
@click.argument("source", type=click.File("r"))
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    help="Exit non-zero when a Change transitions to Failed.",
)
@click.pass_context
def event_command(
    ctx: click.Context,
    source: IO[str],
    output_format: str,
    strict: bool,
) -> None:
    """Apply events from SOURCE ('-' reads stdin) in order."""
    try:
        events = parse_events(source.read())
    except (ValueError, ValidationError, yaml.YAMLError) as e:
        error_exit(f"Invalid event document: {e}", exit_code=ExitCode.VALIDATION_ERROR)

    machine = build_machine(ctx)
    records: list[PromotionRecord] = []
    for event in events:
        info(f"Applying {event.type.value} {event.event_id} to {event.change_id}")
        records.extend(machine.handle(event))
    logger.info("cli_events_applied", events=len(events), records=len(records))

    success(_render(records, output_format.lower()))
    _exit_if_failed(records, strict)


@click.command(
    name="resume",
    help="Resume production promotions interrupted by a restart.",
)
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.option("--strict", is_flag=True, default=False, help="Exit non-zero on failures.")
@click.pass_context
def resume_command(ctx: click.Context, output_format: str, strict: bool) -> None:
    """Drive Changes left in ReleaseMerged or ProductionDeploying."""
    machine = build_machine(ctx)
    records = machine.resume()
    if not records:
        info("Nothing to resume")
    success(_render(records, output_format.lower()))
    _exit_if_failed(records, strict)


__all__ = ["build_machine", "event_command", "parse_events", "resume_command"]
