"""Status and audit commands.

    sluice status: Lifecycle state of every Change (or one Change)
    sluice audit CHANGE_ID: PromotionRecord trail of a Change
    sluice releases: Release descriptors, newest first

Example:
    $ sluice status
    $ sluice status --change PR-42 --output json
    $ sluice audit PR-42
"""

from __future__ import annotations

import click

from sluice.cli.utils import ExitCode, dump_json, error_exit, format_table, open_store, success

_OUTPUT_OPTION = click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


@click.command(name="status", help="Show the lifecycle state of Changes.")
@click.option("--change", "change_id", default=None, metavar="ID", help="Show a single Change.")
@_OUTPUT_OPTION
@click.pass_context
def status_command(ctx: click.Context, change_id: str | None, output_format: str) -> None:
    store = open_store(ctx)
    if change_id is not None:
        change = store.get_change(change_id)
        if change is None:
            error_exit("Change not found", exit_code=ExitCode.FILE_NOT_FOUND, change=change_id)
        changes = [change]
    else:
        changes = store.list_changes()

    if output_format.lower() == "json":
        success(dump_json([c.model_dump(mode="json") for c in changes]))
        return

    success(
        format_table(
            ["CHANGE", "STATE", "GEN", "RELEASE", "ROUTE", "BLOCKED", "UPDATED"],
            [
                [
                    c.change_id,
                    c.state.value + (" (fast-track)" if c.fast_track else ""),
                    c.generation,
                    c.release_version,
                    c.route,
                    c.blocked_reason,
                    c.updated_at.isoformat() if c.updated_at else None,
                ]
                for c in changes
            ],
        )
    )


@click.command(name="audit", help="Show the promotion history of a Change.")
@click.argument("change_id")
@_OUTPUT_OPTION
@click.pass_context
def audit_command(ctx: click.Context, change_id: str, output_format: str) -> None:
    """Print the PromotionRecords of CHANGE_ID in commit order."""
    store = open_store(ctx)
    records = store.records_for(change_id)
    if not records:
        error_exit("No promotion records", exit_code=ExitCode.FILE_NOT_FOUND, change=change_id)

    if output_format.lower() == "json":
        success(dump_json([r.model_dump(mode="json") for r in records]))
        return

    success(
        format_table(
            ["TIMESTAMP", "FROM", "TO", "EVENT", "ACTOR", "DETAIL"],
            [
                [
                    r.timestamp.isoformat(),
                    r.from_state.value if r.from_state else "-",
                    r.to_state.value,
                    r.event_id,
                    r.actor.identity or r.actor.kind.value,
                    r.detail,
                ]
                for r in records
            ],
        )
    )


@click.command(name="releases", help="List release descriptors, newest first.")
@_OUTPUT_OPTION
@click.pass_context
def releases_command(ctx: click.Context, output_format: str) -> None:
    releases = open_store(ctx).list_releases()
    if output_format.lower() == "json":
        success(dump_json([r.model_dump(mode="json") for r in releases]))
        return
    success(
        format_table(
            ["VERSION", "BUMP", "STATUS", "CHANGE", "RANGE"],
            [[r.tag, r.bump.value, r.status.value, r.change_id, r.commit_range] for r in releases],
        )
    )


__all__ = ["audit_command", "releases_command", "status_command"]
