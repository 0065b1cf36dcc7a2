"""Payload path extraction.

Paths look like ``$.order.items[1].sku``: an optional ``$`` / ``$.``
prefix, dot-separated segments, each optionally suffixed with one
zero-based ``[index]``. Extraction never raises; anything that cannot be
resolved is reported as not found.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_SEGMENT = re.compile(r"^(?P<name>[^\[\]]*)(?:\[(?P<index>\d+)\])?$")


@dataclass(frozen=True)
class Extraction:
    value: Any = None
    found: bool = False


NOT_FOUND = Extraction()


def _strip_root(path: str) -> str:
    path = path.strip()
    if path.startswith("$."):
        return path[2:]
    if path.startswith("$"):
        return path[1:]
    return path


def extract(document: Any, path: Any) -> Extraction:
    """Resolve *path* against *document*.

    An empty path or bare ``$`` returns the whole document. A segment that
    hits None, a missing key, an index on a non-list, or an index out of
    range yields NOT_FOUND, as does a path that is not a string or does not
    parse.
    """
    if path is None:
        return Extraction(value=document, found=True)
    if not isinstance(path, str):
        return NOT_FOUND
    rest = _strip_root(path)
    if not rest:
        return Extraction(value=document, found=True)

    current = document
    for segment in rest.split("."):
        match = _SEGMENT.match(segment)
        if match is None:
            return NOT_FOUND
        name, index = match.group("name"), match.group("index")
        if not name and index is None:
            return NOT_FOUND

        if name:
            if not isinstance(current, dict) or name not in current:
                return NOT_FOUND
            current = current[name]
            if current is None:
                return NOT_FOUND

        if index is not None:
            if not isinstance(current, list):
                return NOT_FOUND
            position = int(index)
            if position >= len(current):
                return NOT_FOUND
            current = current[position]
            if current is None:
                return NOT_FOUND

    return Extraction(value=current, found=True)


def extract_value(document: Any, path: Any, default: Any = None) -> Any:
    """Like extract() but returns the value, or *default* when not found."""
    result = extract(document, path)
    return result.value if result.found else default
