"""Shopfloor CLI -- terminal interface for work orders and webhook rules.

This module is NEVER imported from shopfloor/__init__.py.
It is only loaded via the ``shopfloor`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click
from dotenv import load_dotenv

from shopfloor.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from shopfloor.shopfloor import Shopfloor

DEFAULT_DB = ".shopfloor.db"


@click.group()
@click.option(
    "--db",
    default=None,
    help=f"Path to shopfloor database (default: $SHOPFLOOR_DB or {DEFAULT_DB}).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, db: str | None, verbose: bool) -> None:
    """Shopfloor: work order lists and webhook automation rules."""
    load_dotenv()
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db or os.environ.get("SHOPFLOOR_DB") or DEFAULT_DB


def _get_shopfloor(ctx: click.Context) -> Shopfloor:
    """Open a Shopfloor instance from Click context."""
    from shopfloor.models.config import ShopfloorConfig
    from shopfloor.shopfloor import Shopfloor

    db_path = ctx.obj["db_path"]
    if db_path != ":memory:" and not os.path.exists(db_path):
        raise click.ClickException(f"Database not found: {db_path}")
    return Shopfloor.open(config=ShopfloorConfig.from_env(db_path=db_path))


@contextmanager
def _shopfloor_session(ctx: click.Context) -> Iterator[tuple[Shopfloor, Console]]:
    """Context manager that opens a Shopfloor, yields (shopfloor, console), and handles cleanup.

    Ensures the instance is closed on exit and formats exceptions as CLI errors.
    """
    console = get_console()
    try:
        sf = _get_shopfloor(ctx)
        try:
            yield sf, console
        finally:
            sf.close()
    except SystemExit:
        raise
    except click.ClickException as e:
        format_error(e.format_message(), console)
        raise SystemExit(1) from None
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from shopfloor.cli.commands.extract import extract  # noqa: E402
from shopfloor.cli.commands.rules import rules  # noqa: E402
from shopfloor.cli.commands.test import test  # noqa: E402
from shopfloor.cli.commands.work_orders import work_orders  # noqa: E402

cli.add_command(extract)
cli.add_command(rules)
cli.add_command(test)
cli.add_command(work_orders)
