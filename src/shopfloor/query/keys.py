"""Deterministic cache keys for filter sets."""

from __future__ import annotations

import dataclasses
import enum
import json
from collections.abc import Mapping, Set
from typing import Any


def _normalize(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return _normalize(value.value)
    if isinstance(value, Mapping):
        return {
            str(k): _normalize(v)
            for k, v in value.items()
            if v is not None
        }
    if isinstance(value, Set):
        return sorted((_normalize(v) for v in value), key=_sort_key)
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def cache_key(namespace: str, filters: Any = None) -> str:
    """Stable key for *filters* under *namespace*.

    Structurally equal filter sets give equal keys: mapping key order and set
    iteration order do not matter, and None-valued entries are dropped so an
    omitted filter and an explicit None coincide. Sequence order is kept.
    """
    body = json.dumps(
        _normalize(filters if filters is not None else {}),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return f"{namespace}:{body}"
