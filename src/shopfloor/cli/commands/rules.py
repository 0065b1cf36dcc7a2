"""shopfloor rules -- list a webhook's automation rules."""

from __future__ import annotations

import click

from shopfloor.cli.formatting import format_json, format_rules


@click.command()
@click.argument("webhook_id")
@click.option("--json", "as_json", is_flag=True, help="Print rules as JSON.")
@click.pass_context
def rules(ctx: click.Context, webhook_id: str, as_json: bool) -> None:
    """Show the rules of WEBHOOK_ID in execution order."""
    from shopfloor.cli import _shopfloor_session

    with _shopfloor_session(ctx) as (sf, console):
        found = sf.list_rules(webhook_id)
        if as_json:
            format_json([r.model_dump(mode="json") for r in found], console)
        else:
            format_rules(found, console)
