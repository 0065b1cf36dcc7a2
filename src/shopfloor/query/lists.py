"""Cached, realtime-invalidated list queries for work orders and reports.

A list query owns one ResilientQuery and reads through a shared
EntityCache: a fresh cache entry for its key short-circuits the backend,
otherwise rows are loaded, enriched with batched secondary queries and
stored. When realtime is enabled, change events on the source table are
debounced into one invalidate-and-refetch.

Usage::

    async with WorkOrderListQuery(sources, cache, config=cfg, feed=feed) as q:
        print(q.result.items)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Optional, Sequence, TypeVar

from shopfloor.exceptions import AbortedError
from shopfloor.models.config import ListConfig, QueryConfig
from shopfloor.models.entities import (
    AssignedOperator,
    ProductionReportItem,
    WorkOrderListItem,
    WorkOrderStatus,
)
from shopfloor.query.cache import EntityCache
from shopfloor.query.debounce import Debouncer
from shopfloor.query.keys import cache_key
from shopfloor.query.resilient import ResilientQuery, SleepFn
from shopfloor.query.state import QueryPhase, QueryState
from shopfloor.storage.changes import ChangeEvent, ChangeFeed, Subscription
from shopfloor.storage.repositories import (
    OperatorAssignmentRepository,
    ProfileRepository,
    WorkOrderItemRepository,
    WorkOrderRepository,
)
from shopfloor.storage.schema import WorkOrderItemRow, WorkOrderRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 25


# ---------------------------------------------------------------------------
# Filters and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkOrderFilters:
    exclude_cancelled: bool = True
    statuses: Optional[frozenset[str]] = None
    limit: Optional[int] = None
    user_id: str = "anonymous"

    def __post_init__(self) -> None:
        if self.statuses is not None:
            normalized = frozenset(WorkOrderStatus(s).value for s in self.statuses)
            object.__setattr__(self, "statuses", normalized or None)

    @property
    def excluded(self) -> Optional[set[str]]:
        return {WorkOrderStatus.CANCELLED.value} if self.exclude_cancelled else None


@dataclass(frozen=True)
class ReportFilters:
    limit: Optional[int] = None
    status: str = "all"

    def __post_init__(self) -> None:
        if self.status != "all":
            object.__setattr__(self, "status", WorkOrderStatus(self.status).value)


def _db_worker() -> Executor:
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix="shopfloor-db")


@dataclass
class ListSources:
    """Repositories a list query reads from.

    Blocking loads run on a single worker thread, one at a time, so the
    event loop keeps running while the shared Session is read. Once closed,
    every call raises AbortedError.
    """

    work_orders: WorkOrderRepository
    items: WorkOrderItemRepository
    profiles: ProfileRepository
    assignments: OperatorAssignmentRepository
    executor: Executor = field(default_factory=_db_worker)
    closed: bool = field(default=False, init=False)

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run the blocking *fn* on the worker thread and await its result.

        A caller that stops waiting (timeout, cancellation) does not stop a
        load that has already started; later loads queue behind it.
        """
        if self.closed:
            raise AbortedError("sources closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args))

    def close(self) -> None:
        """Drop queued loads and wait for the one running, if any."""
        self.closed = True
        self.executor.shutdown(wait=True, cancel_futures=True)


@dataclass(frozen=True)
class ListResult(Generic[T]):
    items: list[T] = field(default_factory=list)
    loading: bool = False
    error: Optional[BaseException] = None
    is_stale: bool = False

    @classmethod
    def from_state(cls, state: QueryState) -> ListResult[T]:
        return cls(
            items=list(state.data or []),
            loading=state.loading,
            error=state.error,
            is_stale=state.is_stale,
        )


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


def _group_items(items: Iterable[WorkOrderItemRow]) -> dict[str, list[WorkOrderItemRow]]:
    grouped: dict[str, list[WorkOrderItemRow]] = {}
    for item in items:
        grouped.setdefault(item.work_order_id, []).append(item)
    return grouped


def enrich_work_orders(
    sources: ListSources, rows: Sequence[WorkOrderRow]
) -> list[WorkOrderListItem]:
    """Attach items, creator and operators using one query per table."""
    if not rows:
        return []
    ids = [row.id for row in rows]
    items = _group_items(sources.items.list_for_work_orders(ids))

    creator_ids = {row.created_by for row in rows if row.created_by}
    creators = {p.id: p for p in sources.profiles.get_many(creator_ids)}

    operators: dict[str, list[AssignedOperator]] = {}
    for assignment in sources.assignments.list_for_work_orders(ids):
        profile = assignment.operator
        if profile is None:
            continue
        assigned = operators.setdefault(assignment.work_order_id, [])
        if any(op.id == profile.id for op in assigned):
            continue
        assigned.append(AssignedOperator.from_row(profile))

    return [
        WorkOrderListItem.build(
            row,
            items=items.get(row.id, []),
            creator=creators.get(row.created_by) if row.created_by else None,
            operators=operators.get(row.id, []),
        )
        for row in rows
    ]


def enrich_reports(
    sources: ListSources, rows: Sequence[WorkOrderRow]
) -> list[ProductionReportItem]:
    if not rows:
        return []
    items = _group_items(sources.items.list_for_work_orders([row.id for row in rows]))
    return [ProductionReportItem.build(row, items=items.get(row.id, [])) for row in rows]


# ---------------------------------------------------------------------------
# List queries
# ---------------------------------------------------------------------------


class ListQuery(ABC, Generic[T]):
    """Base for cached entity lists keyed by their filter set."""

    namespace: str = ""
    table: str = "work_orders"

    def __init__(
        self,
        sources: ListSources,
        cache: EntityCache,
        *,
        filters: Any,
        config: ListConfig | None = None,
        feed: ChangeFeed | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._sources = sources
        self._cache = cache
        self._filters = filters
        self._config = config or ListConfig()
        self._feed = feed
        self._key = cache_key(self.namespace, filters)
        self._query: ResilientQuery[list[T]] = ResilientQuery(
            self._fetch,
            config=self._config.query,
            fallback_data=[],
            fallback_provider=self._retained,
            sleep=sleep,
        )
        self._debouncer: Debouncer | None = None
        self._subscription: Subscription | None = None
        self.backend_fetches = 0
        self.invalidations = 0

    @property
    def key(self) -> str:
        return self._key

    @property
    def filters(self) -> Any:
        return self._filters

    @property
    def state(self) -> QueryState:
        return self._query.state

    @property
    def result(self) -> ListResult[T]:
        return ListResult.from_state(self._query.state)

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def debouncer(self) -> Debouncer | None:
        return self._debouncer

    @abstractmethod
    def load(self) -> list[T]:
        """Read and enrich rows from the backend (no cache).

        Blocking; called on the sources' worker thread.
        """
        ...

    async def _fetch(self) -> list[T]:
        entry = self._cache.get_fresh(self._key, self._config.ttl)
        if entry is not None:
            return entry.data
        data = await self._sources.call(self.load)
        self.backend_fetches += 1
        self._cache.set(self._key, data)
        return data

    def _retained(self) -> Optional[list[T]]:
        entry = self._cache.get(self._key)
        return entry.data if entry is not None else None

    async def start(self) -> ListResult[T]:
        """Subscribe to changes (if enabled) and run the first fetch."""
        self._subscribe()
        await self._query.refetch()
        return self.result

    def _subscribe(self) -> None:
        if not self._config.realtime or self._feed is None or self._subscription is not None:
            return
        self._debouncer = Debouncer(
            self._config.debounce,
            self._on_changes_settled,
            loop=asyncio.get_running_loop(),
        )
        self._subscription = self._feed.subscribe(self.table, self._on_change)

    def _on_change(self, event: ChangeEvent) -> None:
        if self._debouncer is not None:
            self._debouncer.trigger()

    def _on_changes_settled(self) -> Any:
        logger.debug("Change burst on %s settled; invalidating %s", self.table, self._key)
        return self.invalidate()

    async def refetch(self) -> ListResult[T]:
        """Run the query again; a fresh cache entry still short-circuits."""
        await self._query.refetch()
        return self.result

    async def invalidate(self) -> ListResult[T]:
        """Drop this key from the cache and refetch from the backend."""
        self.invalidations += 1
        self._cache.clear(self._key)
        return await self.refetch()

    def close(self) -> None:
        """Unsubscribe and cancel the debounce timer and any fetch in flight."""
        if self._debouncer is not None:
            self._debouncer.cancel()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._query.close()

    async def aclose(self) -> None:
        self.close()
        await self._query.aclose()

    async def __aenter__(self) -> ListQuery[T]:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class WorkOrderListQuery(ListQuery[WorkOrderListItem]):
    """Operational work order list (default TTL 30s, realtime on)."""

    namespace = "work_orders"

    def __init__(
        self,
        sources: ListSources,
        cache: EntityCache,
        *,
        filters: WorkOrderFilters | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(sources, cache, filters=filters or WorkOrderFilters(), **kwargs)

    def load(self) -> list[WorkOrderListItem]:
        f: WorkOrderFilters = self._filters
        rows = self._sources.work_orders.list(
            statuses=f.statuses,
            exclude_statuses=f.excluded,
            limit=f.limit,
        )
        return enrich_work_orders(self._sources, rows)


class ProductionReportListQuery(ListQuery[ProductionReportItem]):
    """Historical reports list (default TTL 60s, no realtime)."""

    namespace = "reports"

    def __init__(
        self,
        sources: ListSources,
        cache: EntityCache,
        *,
        filters: ReportFilters | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(sources, cache, filters=filters or ReportFilters(), **kwargs)

    def load(self) -> list[ProductionReportItem]:
        f: ReportFilters = self._filters
        rows = self._sources.work_orders.list(
            statuses=None if f.status == "all" else {f.status},
            limit=f.limit,
        )
        return enrich_reports(self._sources, rows)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Page:
    items: list[WorkOrderListItem]
    row_count: int
    total: Optional[int] = None


class PaginatedWorkOrderQuery:
    """Incrementally loaded work order list.

    Pages are fetched with a keyset cursor on ``(created_at, id)`` so rows
    inserted or removed between page loads do not shift page boundaries.
    ``has_more`` is decided by a short page, or by comparing against an
    exact row count when *exact_count* is set. Changing filters through
    reset() discards accumulated rows and supersedes any load in flight.
    """

    def __init__(
        self,
        sources: ListSources,
        *,
        filters: WorkOrderFilters | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        exact_count: bool = False,
        config: QueryConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._sources = sources
        self._filters = filters or WorkOrderFilters()
        self._page_size = page_size
        self._exact_count = exact_count
        self._query: ResilientQuery[_Page] = ResilientQuery(
            self._fetch_page, config=config or QueryConfig(timeout=15.0), sleep=sleep
        )
        self._epoch = 0
        self._items: list[WorkOrderListItem] = []
        self._seen: set[str] = set()
        self._cursor: tuple[Any, str] | None = None
        self._has_more = True
        self._loading = False
        self._error: BaseException | None = None
        self.pages_loaded = 0

    @property
    def items(self) -> list[WorkOrderListItem]:
        return list(self._items)

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def filters(self) -> WorkOrderFilters:
        return self._filters

    async def _fetch_page(self) -> _Page:
        return await self._sources.call(self._load_page)

    def _load_page(self) -> _Page:
        f = self._filters
        rows = self._sources.work_orders.list(
            statuses=f.statuses,
            exclude_statuses=f.excluded,
            limit=self._page_size,
            before=self._cursor,
        )
        total = None
        if self._exact_count:
            total = self._sources.work_orders.count(
                statuses=f.statuses, exclude_statuses=f.excluded
            )
        return _Page(
            items=enrich_work_orders(self._sources, rows), row_count=len(rows), total=total
        )

    async def load_more(self) -> list[WorkOrderListItem]:
        """Fetch the next page and append it. Returns the rows added.

        No-op while a page is loading or once the end has been reached.
        """
        if self._loading or not self._has_more:
            return []
        epoch = self._epoch
        self._loading = True
        try:
            state = await self._query.refetch()
        finally:
            if epoch == self._epoch:
                self._loading = False
        if epoch != self._epoch:
            return []
        if state.phase is not QueryPhase.SUCCEEDED:
            self._error = state.error
            return []
        self._error = None
        return self._append(state.data)

    def _append(self, page: _Page) -> list[WorkOrderListItem]:
        added = [item for item in page.items if item.id not in self._seen]
        for item in added:
            self._seen.add(item.id)
        self._items.extend(added)
        if page.items:
            last = page.items[-1]
            self._cursor = (last.created_at, last.id)
        self.pages_loaded += 1

        if page.total is not None:
            self._has_more = len(self._items) < page.total
        else:
            self._has_more = page.row_count >= self._page_size
        logger.debug(
            "Loaded page %d (%d rows, has_more=%s)",
            self.pages_loaded,
            len(added),
            self._has_more,
        )
        return added

    async def reset(self, filters: WorkOrderFilters | None = None) -> list[WorkOrderListItem]:
        """Start over (optionally with new filters) and load the first page."""
        self._epoch += 1
        if filters is not None:
            self._filters = filters
        self._items = []
        self._seen = set()
        self._cursor = None
        self._has_more = True
        self._loading = False
        self._error = None
        self.pages_loaded = 0
        return await self.load_more()

    def close(self) -> None:
        self._epoch += 1
        self._query.close()

    async def aclose(self) -> None:
        self.close()
        await self._query.aclose()
