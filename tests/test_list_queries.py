"""Tests for the cached work order and report list queries."""

from __future__ import annotations

import asyncio
import time

import pytest

from shopfloor.exceptions import QueryTimeoutError
from shopfloor.models.config import ListConfig, QueryConfig
from shopfloor.models.entities import ProductType, WorkOrderStatus
from shopfloor.query.cache import EntityCache
from shopfloor.query.lists import (
    ProductionReportListQuery,
    ReportFilters,
    WorkOrderFilters,
    WorkOrderListQuery,
)
from shopfloor.storage.schema import ProfileRow

pytestmark = pytest.mark.asyncio

NO_RETRY = QueryConfig(retry_count=0, retry_delay=0)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _config(**overrides) -> ListConfig:
    data = {"ttl": 30.0, "debounce": 0.01, "query": NO_RETRY}
    data.update(overrides)
    return ListConfig(**data)


@pytest.fixture
def operator(profile_repo) -> ProfileRow:
    profile = ProfileRow(full_name="Olga Operator", avatar_url="https://img.example.com/o.png")
    profile_repo.save(profile)
    return profile


# ---------------------------------------------------------------------------
# Loading and enrichment
# ---------------------------------------------------------------------------


class TestWorkOrderEnrichment:
    async def test_items_creator_and_operators(
        self, sources, add_work_order, assign, admin_id, operator
    ):
        wo = add_work_order(
            "WO-1",
            created_by=admin_id,
            customer_name="Acme",
            item_statuses=("completed", "in_progress", "planned", "completed"),
            batch_size=4,
        )
        assign(wo.id, operator.id)
        assign(wo.id, operator.id)

        async with WorkOrderListQuery(sources, EntityCache(), config=_config()) as query:
            result = query.result

        assert result.error is None
        assert not result.loading
        [item] = result.items
        assert item.wo_number == "WO-1"
        assert item.customer_name == "Acme"
        assert item.creator.full_name == "Ada Admin"
        assert item.completed_items == 2
        assert item.total_items == 4
        assert item.progress_percent == 50
        assert [(b.type, b.count) for b in item.product_breakdown] == [(ProductType.SENSOR, 4)]
        assert [op.full_name for op in item.assigned_operators] == ["Olga Operator"]
        assert item.assigned_operators[0].avatar_url == "https://img.example.com/o.png"

    async def test_no_items_uses_batch_size(self, sources, add_work_order):
        add_work_order("WO-1", batch_size=5)
        async with WorkOrderListQuery(sources, EntityCache(), config=_config()) as query:
            [item] = query.result.items
        assert item.total_items == 5
        assert item.progress_percent == 0
        assert item.product_breakdown == []
        assert item.creator is None
        assert item.assigned_operators == []

    async def test_newest_first_and_cancelled_excluded(self, sources, add_work_order):
        add_work_order("WO-OLD", minutes=0)
        add_work_order("WO-NEW", minutes=10)
        add_work_order("WO-X", minutes=5, status="cancelled")
        async with WorkOrderListQuery(sources, EntityCache(), config=_config()) as query:
            numbers = [item.wo_number for item in query.result.items]
        assert numbers == ["WO-NEW", "WO-OLD"]

    async def test_include_cancelled(self, sources, add_work_order):
        add_work_order("WO-1")
        add_work_order("WO-2", status="cancelled", minutes=1)
        filters = WorkOrderFilters(exclude_cancelled=False)
        async with WorkOrderListQuery(
            sources, EntityCache(), filters=filters, config=_config()
        ) as query:
            assert [item.status for item in query.result.items] == [
                WorkOrderStatus.CANCELLED,
                WorkOrderStatus.PLANNED,
            ]

    async def test_status_filter_and_limit(self, sources, add_work_order):
        for i in range(4):
            add_work_order(f"WO-P{i}", minutes=i)
        add_work_order("WO-I", status="in_progress", minutes=10)
        filters = WorkOrderFilters(statuses=frozenset({"planned"}), limit=2)
        async with WorkOrderListQuery(
            sources, EntityCache(), filters=filters, config=_config()
        ) as query:
            assert [item.wo_number for item in query.result.items] == ["WO-P3", "WO-P2"]

    async def test_invalid_status_filter(self):
        with pytest.raises(ValueError):
            WorkOrderFilters(statuses=frozenset({"shipped"}))

    async def test_empty_database(self, sources):
        async with WorkOrderListQuery(sources, EntityCache(), config=_config()) as query:
            assert query.result.items == []
            assert query.backend_fetches == 1


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------


class TestCaching:
    async def test_fresh_entry_skips_backend(self, sources, add_work_order):
        add_work_order("WO-1")
        cache = EntityCache()
        async with WorkOrderListQuery(sources, cache, config=_config()) as first:
            assert first.backend_fetches == 1
        async with WorkOrderListQuery(sources, cache, config=_config()) as second:
            assert second.backend_fetches == 0
            assert [i.wo_number for i in second.result.items] == ["WO-1"]

    async def test_cached_data_survives_new_rows_until_ttl(self, sources, add_work_order):
        clock = FakeClock()
        cache = EntityCache(clock=clock)
        add_work_order("WO-1")
        query = WorkOrderListQuery(sources, cache, config=_config(realtime=False))
        await query.start()
        add_work_order("WO-2", minutes=1)

        clock.now = 29.0
        assert len((await query.refetch()).items) == 1

        clock.now = 31.0
        assert len((await query.refetch()).items) == 2
        assert query.backend_fetches == 2
        await query.aclose()

    async def test_distinct_filters_use_distinct_keys(self, sources, add_work_order):
        add_work_order("WO-1")
        cache = EntityCache()
        planned = WorkOrderListQuery(
            sources,
            cache,
            filters=WorkOrderFilters(statuses=frozenset({"planned"})),
            config=_config(),
        )
        everything = WorkOrderListQuery(sources, cache, config=_config())
        assert planned.key != everything.key
        await planned.start()
        await everything.start()
        assert planned.backend_fetches == 1
        assert everything.backend_fetches == 1
        assert len(cache) == 2
        await planned.aclose()
        await everything.aclose()

    async def test_cache_bound_across_filter_sets(self, sources):
        cache = EntityCache(maxsize=10)
        for limit in range(1, 12):
            query = WorkOrderListQuery(
                sources, cache, filters=WorkOrderFilters(limit=limit), config=_config()
            )
            await query.start()
            await query.aclose()
        assert len(cache) == 10
        first_key = WorkOrderListQuery(
            sources, cache, filters=WorkOrderFilters(limit=1), config=_config()
        ).key
        assert first_key not in cache

    async def test_invalidate_refetches(self, sources, add_work_order):
        add_work_order("WO-1")
        cache = EntityCache()
        async with WorkOrderListQuery(sources, cache, config=_config(realtime=False)) as query:
            add_work_order("WO-2", minutes=1)
            assert len((await query.refetch()).items) == 1
            result = await query.invalidate()
            assert [i.wo_number for i in result.items] == ["WO-2", "WO-1"]
            assert query.invalidations == 1
            assert query.backend_fetches == 2


# ---------------------------------------------------------------------------
# Failure fallback
# ---------------------------------------------------------------------------


class TestFallback:
    async def test_failure_serves_retained_cache_entry(self, sources, add_work_order):
        clock = FakeClock()
        cache = EntityCache(clock=clock)
        add_work_order("WO-1")
        seeded = WorkOrderListQuery(sources, cache, config=_config(realtime=False))
        await seeded.start()
        await seeded.aclose()

        clock.now = 100.0
        query = WorkOrderListQuery(sources, cache, config=_config(realtime=False))

        def failing():
            raise ConnectionError("backend down")

        query.load = failing
        result = await query.start()
        assert result.is_stale
        assert isinstance(result.error, ConnectionError)
        assert [i.wo_number for i in result.items] == ["WO-1"]
        await query.aclose()

    async def test_failure_without_cache_is_empty(self, sources):
        query = WorkOrderListQuery(sources, EntityCache(), config=_config(realtime=False))

        def failing():
            raise ConnectionError("backend down")

        query.load = failing
        result = await query.start()
        assert result.items == []
        assert result.is_stale
        assert result.error is not None
        await query.aclose()

    async def test_retries_before_falling_back(self, sources, add_work_order):
        add_work_order("WO-1")
        delays: list[float] = []

        async def sleep(delay: float) -> None:
            delays.append(delay)

        config = _config(realtime=False, query=QueryConfig(retry_count=2, retry_delay=1.0))
        query = WorkOrderListQuery(sources, EntityCache(), config=config, sleep=sleep)
        original = query.load
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("blip")
            return original()

        query.load = flaky
        result = await query.start()
        assert result.error is None
        assert len(result.items) == 1
        assert delays == [1.0, 2.0]
        await query.aclose()

    async def test_slow_load_times_out_with_stale_items(self, sources, add_work_order):
        add_work_order("WO-1")
        config = _config(realtime=False, query=QueryConfig(retry_count=0, timeout=0.2))
        query = WorkOrderListQuery(sources, EntityCache(), config=config)
        await query.start()

        def slow():
            time.sleep(0.6)
            return []

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        ticking = asyncio.create_task(ticker())
        query.load = slow
        started = time.monotonic()
        result = await query.invalidate()
        elapsed = time.monotonic() - started
        ticking.cancel()

        assert isinstance(result.error, QueryTimeoutError)
        assert result.is_stale
        assert [i.wo_number for i in result.items] == ["WO-1"]
        assert elapsed < 0.5
        assert ticks >= 5
        await query.aclose()

    async def test_closed_sources_stop_without_error(self, sources, add_work_order):
        add_work_order("WO-1")
        query = WorkOrderListQuery(sources, EntityCache(), config=_config(realtime=False))
        sources.close()
        result = await query.start()
        assert result.error is None
        assert not result.is_stale
        assert result.items == []
        assert not query.state.loading
        assert query.backend_fetches == 0
        await query.aclose()


# ---------------------------------------------------------------------------
# Realtime invalidation
# ---------------------------------------------------------------------------


class TestRealtime:
    async def test_change_triggers_invalidation(self, sources, feed, add_work_order):
        add_work_order("WO-1")
        query = WorkOrderListQuery(sources, EntityCache(), config=_config(), feed=feed)
        await query.start()
        assert query.subscribed
        assert feed.subscriber_count("work_orders") == 1

        add_work_order("WO-2", minutes=1)
        assert query.debouncer.pending
        await query.debouncer.flush()

        assert query.invalidations == 1
        assert [i.wo_number for i in query.result.items] == ["WO-2", "WO-1"]
        await query.aclose()

    async def test_burst_collapses_to_one_refetch(self, sources, feed, add_work_order):
        query = WorkOrderListQuery(sources, EntityCache(), config=_config(), feed=feed)
        await query.start()
        for i in range(5):
            add_work_order(f"WO-{i}", minutes=i)
        await asyncio.sleep(0.1)
        await query.debouncer.flush()

        assert query.invalidations == 1
        assert query.backend_fetches == 2
        assert len(query.result.items) == 5
        await query.aclose()

    async def test_other_tables_are_ignored(self, sources, feed, profile_repo):
        query = WorkOrderListQuery(sources, EntityCache(), config=_config(), feed=feed)
        await query.start()
        profile_repo.save(ProfileRow(full_name="Someone"))
        assert not query.debouncer.pending
        await query.aclose()

    async def test_realtime_disabled_does_not_subscribe(self, sources, feed):
        query = WorkOrderListQuery(
            sources, EntityCache(), config=_config(realtime=False), feed=feed
        )
        await query.start()
        assert not query.subscribed
        assert feed.subscriber_count("work_orders") == 0
        await query.aclose()

    async def test_close_unsubscribes_and_cancels_timer(self, sources, feed, add_work_order):
        query = WorkOrderListQuery(sources, EntityCache(), config=_config(), feed=feed)
        await query.start()
        add_work_order("WO-1")
        assert query.debouncer.pending
        await query.aclose()

        assert not query.subscribed
        assert feed.subscriber_count("work_orders") == 0
        assert not query.debouncer.pending
        add_work_order("WO-2", minutes=1)
        await asyncio.sleep(0.05)
        assert query.invalidations == 0


# ---------------------------------------------------------------------------
# Production reports
# ---------------------------------------------------------------------------


class TestProductionReports:
    async def test_all_statuses_including_cancelled(self, sources, add_work_order):
        add_work_order("WO-1", status="completed", item_statuses=("completed",))
        add_work_order("WO-2", status="cancelled", minutes=1)
        async with ProductionReportListQuery(
            sources, EntityCache(), config=_config(realtime=False)
        ) as query:
            assert [i.wo_number for i in query.result.items] == ["WO-2", "WO-1"]

    async def test_status_filter(self, sources, add_work_order):
        add_work_order("WO-1", status="completed", item_statuses=("completed", "completed"))
        add_work_order("WO-2", status="planned", minutes=1)
        filters = ReportFilters(status="completed")
        async with ProductionReportListQuery(
            sources, EntityCache(), filters=filters, config=_config(realtime=False)
        ) as query:
            [item] = query.result.items
        assert item.wo_number == "WO-1"
        assert item.product_breakdown[0].count == 2

    async def test_invalid_status(self):
        with pytest.raises(ValueError):
            ReportFilters(status="archived")

    async def test_report_key_namespace(self, sources):
        query = ProductionReportListQuery(sources, EntityCache())
        assert query.key.startswith("reports:")
