"""Observable state of a resilient query."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Any, Optional


class QueryPhase(str, enum.Enum):
    """Lifecycle of one query instance.

    IDLE -> FETCHING -> (RETRYING -> FETCHING)* -> SUCCEEDED | FAILED

    A new chain may start from any phase; the previous chain is superseded.
    """

    IDLE = "idle"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in (QueryPhase.FETCHING, QueryPhase.RETRYING)


@dataclass(frozen=True)
class QueryState:
    """Snapshot published to listeners after every transition.

    ``loading`` is True exactly while a chain is in flight. ``is_stale`` is
    True whenever ``data`` came from a fallback rather than a fresh fetch.
    """

    data: Any = None
    loading: bool = False
    error: Optional[BaseException] = None
    is_stale: bool = False
    phase: QueryPhase = QueryPhase.IDLE
    attempts: int = 0

    def evolve(self, **changes: Any) -> QueryState:
        return replace(self, **changes)
