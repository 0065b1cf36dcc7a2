"""shopfloor test -- run a webhook's rules against a sample payload."""

from __future__ import annotations

import json

import click

from shopfloor.cli.formatting import format_json, format_test_report


@click.command()
@click.argument("webhook_id")
@click.argument("payload_file", type=click.File("r"))
@click.option("--live", is_flag=True, help="Execute would-execute rules (default: dry run).")
@click.option("--json", "as_json", is_flag=True, help="Print the raw test response as JSON.")
@click.pass_context
def test(ctx: click.Context, webhook_id: str, payload_file: click.utils.LazyFile, live: bool, as_json: bool) -> None:
    """Test WEBHOOK_ID with the JSON payload in PAYLOAD_FILE.

    A dry run reports, per rule, the condition outcome, extracted values
    and whether it would execute, without changing anything. With --live
    the rules are executed and the run is logged as a test.
    """
    from shopfloor.cli import _shopfloor_session

    with _shopfloor_session(ctx) as (sf, console):
        try:
            payload = json.load(payload_file)
        except ValueError as e:
            raise click.ClickException(f"Invalid JSON: {e}") from None
        report = sf.test_webhook(webhook_id, payload, dry_run=not live)
        if as_json:
            format_json(report.to_dict(), console)
        else:
            format_test_report(report, console)
