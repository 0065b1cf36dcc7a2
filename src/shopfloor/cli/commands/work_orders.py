"""shopfloor work-orders -- list enriched work orders."""

from __future__ import annotations

import asyncio

import click

from shopfloor.cli.formatting import format_warning, format_work_orders
from shopfloor.models.entities import WorkOrderStatus


@click.command("work-orders")
@click.option(
    "-s",
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([s.value for s in WorkOrderStatus], case_sensitive=False),
    help="Only show these statuses (repeatable).",
)
@click.option("--include-cancelled", is_flag=True, help="Include cancelled work orders.")
@click.option("-n", "--limit", default=None, type=click.IntRange(min=1), help="Maximum rows.")
@click.pass_context
def work_orders(
    ctx: click.Context,
    statuses: tuple[str, ...],
    include_cancelled: bool,
    limit: int | None,
) -> None:
    """List work orders, newest first, with progress and product breakdown."""
    from shopfloor.cli import _shopfloor_session
    from shopfloor.query.lists import WorkOrderFilters

    filters = WorkOrderFilters(
        exclude_cancelled=not include_cancelled,
        statuses=frozenset(s.lower() for s in statuses) or None,
        limit=limit,
    )

    with _shopfloor_session(ctx) as (sf, console):

        async def _load():  # type: ignore[no-untyped-def]
            async with sf.work_orders(filters) as query:
                return query.result

        result = asyncio.run(_load())
        if result.error is not None:
            format_warning(f"Showing stale data: {result.error}", console)
        format_work_orders(result.items, console)
