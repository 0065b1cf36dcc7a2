"""Tests for deterministic cache-key derivation."""

from __future__ import annotations

from hypothesis import given, strategies as st

from shopfloor.models.entities import WorkOrderStatus
from shopfloor.query.keys import cache_key
from shopfloor.query.lists import ReportFilters, WorkOrderFilters


class TestCacheKey:
    def test_namespace_prefix(self):
        assert cache_key("work_orders", {"limit": 5}) == 'work_orders:{"limit":5}'
        assert cache_key("reports") == "reports:{}"

    def test_mapping_order_is_irrelevant(self):
        assert cache_key("ns", {"a": 1, "b": 2}) == cache_key("ns", {"b": 2, "a": 1})

    def test_set_order_is_irrelevant(self):
        assert cache_key("ns", {"s": {"x", "y", "z"}}) == cache_key("ns", {"s": {"z", "x", "y"}})

    def test_list_order_matters(self):
        assert cache_key("ns", {"l": [1, 2]}) != cache_key("ns", {"l": [2, 1]})

    def test_none_equals_omitted(self):
        assert cache_key("ns", {"limit": None, "a": 1}) == cache_key("ns", {"a": 1})

    def test_namespaces_differ(self):
        assert cache_key("work_orders", {}) != cache_key("reports", {})

    def test_enums_use_values(self):
        assert cache_key("ns", {"s": WorkOrderStatus.PLANNED}) == cache_key("ns", {"s": "planned"})

    def test_filter_dataclasses(self):
        a = WorkOrderFilters(statuses=frozenset({"planned", "in_progress"}))
        b = WorkOrderFilters(statuses=frozenset({"in_progress", "planned"}))
        assert cache_key("work_orders", a) == cache_key("work_orders", b)
        assert cache_key("work_orders", a) != cache_key(
            "work_orders", WorkOrderFilters(statuses=frozenset({"planned"}))
        )

    def test_user_scope_is_part_of_key(self):
        assert cache_key("work_orders", WorkOrderFilters(user_id="u1")) != cache_key(
            "work_orders", WorkOrderFilters(user_id="u2")
        )

    def test_report_filters(self):
        assert cache_key("reports", ReportFilters()) == cache_key("reports", ReportFilters(status="all"))


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

filter_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-1000, max_value=1000),
    st.text(max_size=8),
    st.frozensets(st.text(max_size=5), max_size=4),
)


class TestCacheKeyProperties:
    @given(st.dictionaries(st.text(max_size=8), filter_values, max_size=6))
    def test_key_independent_of_insertion_order(self, filters):
        reordered = dict(reversed(list(filters.items())))
        assert cache_key("ns", filters) == cache_key("ns", reordered)

    @given(st.dictionaries(st.text(max_size=8), filter_values, max_size=6))
    def test_key_is_deterministic(self, filters):
        assert cache_key("ns", filters) == cache_key("ns", dict(filters))
