"""shopfloor extract -- resolve a path against a JSON payload."""

from __future__ import annotations

import json

import click

from shopfloor.cli.formatting import format_error, format_json, get_console


@click.command()
@click.argument("payload_file", type=click.File("r"))
@click.argument("path")
def extract(payload_file: click.utils.LazyFile, path: str) -> None:
    """Print the value at PATH inside the JSON document in PAYLOAD_FILE.

    PATH uses dot segments with optional list indexes, e.g.
    ``order.lines[0].sku``. Use "-" as PAYLOAD_FILE to read stdin.
    Exits with status 1 when nothing is found at PATH.
    """
    from shopfloor.automation.extractor import extract as extract_path

    console = get_console()
    try:
        document = json.load(payload_file)
    except ValueError as e:
        format_error(f"Invalid JSON: {e}", console)
        raise SystemExit(1) from None

    result = extract_path(document, path)
    if not result.found:
        format_error(f"Nothing found at {path!r}", console)
        raise SystemExit(1)
    format_json(result.value, console)
