"""Query package -- resilient fetching and cached entity lists.

Provides ResilientQuery (retry, timeout, supersession, stale fallback),
EntityCache, and the work order / report list queries built on them.
"""

from shopfloor.query.state import QueryPhase, QueryState
from shopfloor.query.resilient import ResilientQuery, run_with_retry
from shopfloor.query.cache import CacheEntry, EntityCache
from shopfloor.query.keys import cache_key
from shopfloor.query.debounce import Debouncer
from shopfloor.query.lists import (
    ListQuery,
    ListResult,
    ListSources,
    PaginatedWorkOrderQuery,
    ProductionReportListQuery,
    ReportFilters,
    WorkOrderFilters,
    WorkOrderListQuery,
)

__all__ = [
    "QueryPhase",
    "QueryState",
    "ResilientQuery",
    "run_with_retry",
    "CacheEntry",
    "EntityCache",
    "cache_key",
    "Debouncer",
    "ListQuery",
    "ListResult",
    "ListSources",
    "WorkOrderFilters",
    "ReportFilters",
    "WorkOrderListQuery",
    "ProductionReportListQuery",
    "PaginatedWorkOrderQuery",
]
