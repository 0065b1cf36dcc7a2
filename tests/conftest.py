"""Shared test fixtures for Shopfloor.

Provides in-memory SQLite engine, session, change feed, repository and
seed-data fixtures, plus a fully wired Shopfloor with a mock HTTP transport.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy.orm import Session, sessionmaker

from shopfloor.models.config import DispatchConfig, ListConfig, QueryConfig, ShopfloorConfig
from shopfloor.query.lists import ListSources
from shopfloor.shopfloor import Shopfloor
from shopfloor.storage.changes import ChangeFeed
from shopfloor.storage.engine import create_shopfloor_engine, init_db
from shopfloor.storage.schema import (
    OperatorAssignmentRow,
    ProfileRow,
    WorkOrderItemRow,
    WorkOrderRow,
)
from shopfloor.storage.sqlite import (
    SqliteActivityLogRepository,
    SqliteAutomationRuleRepository,
    SqliteOperatorAssignmentRepository,
    SqliteProfileRepository,
    SqliteWebhookLogRepository,
    SqliteWebhookRepository,
    SqliteWorkOrderItemRepository,
    SqliteWorkOrderRepository,
)

BASE_TIME = datetime(2024, 3, 1, 8, 0, 0)


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_shopfloor_engine(":memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    """Session with automatic rollback after each test."""
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sess = SessionLocal()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def work_order_repo(session: Session, feed: ChangeFeed) -> SqliteWorkOrderRepository:
    return SqliteWorkOrderRepository(session, feed)


@pytest.fixture
def item_repo(session: Session, feed: ChangeFeed) -> SqliteWorkOrderItemRepository:
    return SqliteWorkOrderItemRepository(session, feed)


@pytest.fixture
def profile_repo(session: Session, feed: ChangeFeed) -> SqliteProfileRepository:
    return SqliteProfileRepository(session, feed)


@pytest.fixture
def assignment_repo(session: Session, feed: ChangeFeed) -> SqliteOperatorAssignmentRepository:
    return SqliteOperatorAssignmentRepository(session, feed)


@pytest.fixture
def webhook_repo(session: Session, feed: ChangeFeed) -> SqliteWebhookRepository:
    return SqliteWebhookRepository(session, feed)


@pytest.fixture
def rule_repo(session: Session, feed: ChangeFeed) -> SqliteAutomationRuleRepository:
    return SqliteAutomationRuleRepository(session, feed)


@pytest.fixture
def log_repo(session: Session, feed: ChangeFeed) -> SqliteWebhookLogRepository:
    return SqliteWebhookLogRepository(session, feed)


@pytest.fixture
def activity_repo(session: Session, feed: ChangeFeed) -> SqliteActivityLogRepository:
    return SqliteActivityLogRepository(session, feed)


@pytest.fixture
def sources(work_order_repo, item_repo, profile_repo, assignment_repo):
    sources = ListSources(
        work_orders=work_order_repo,
        items=item_repo,
        profiles=profile_repo,
        assignments=assignment_repo,
    )
    yield sources
    sources.close()


@pytest.fixture
def admin_id(profile_repo: SqliteProfileRepository) -> str:
    """An admin profile; create_work_order attributes new orders to it."""
    profile = ProfileRow(full_name="Ada Admin")
    profile_repo.save(profile)
    profile_repo.add_role(profile.id, "admin")
    return profile.id


@pytest.fixture
def add_work_order(work_order_repo, item_repo):
    """Factory inserting a work order with items.

    ``minutes`` offsets created_at from BASE_TIME so list order is known.
    ``item_statuses`` gives one item per entry, serials ``<prefix>-<n>-<i>``.
    """
    counter = {"n": 0}

    def _add(
        wo_number: str,
        *,
        status: str = "planned",
        product_type: str = "SENSOR",
        batch_size: int = 2,
        minutes: int = 0,
        created_by: str | None = None,
        customer_name: str | None = None,
        item_statuses: tuple[str, ...] = (),
        serial_prefix: str = "Q",
    ) -> WorkOrderRow:
        counter["n"] += 1
        row = WorkOrderRow(
            wo_number=wo_number,
            product_type=product_type,
            batch_size=batch_size,
            status=status,
            created_by=created_by,
            customer_name=customer_name,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )
        work_order_repo.save(row)
        if item_statuses:
            item_repo.save_many(
                [
                    WorkOrderItemRow(
                        work_order_id=row.id,
                        serial_number=f"{serial_prefix}-{counter['n']}-{i:03d}",
                        position_in_batch=i,
                        status=item_status,
                    )
                    for i, item_status in enumerate(item_statuses, start=1)
                ]
            )
        return row

    return _add


@pytest.fixture
def assign(assignment_repo):
    def _assign(work_order_id: str, operator_id: str) -> None:
        assignment_repo.save(
            OperatorAssignmentRow(work_order_id=work_order_id, operator_id=operator_id)
        )

    return _assign


# ---------------------------------------------------------------------------
# Shopfloor facade
# ---------------------------------------------------------------------------


class RecordingTransport:
    """httpx transport handler that records requests and replays responses."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.statuses) - 1)
        return httpx.Response(self.statuses[index], json={"ok": True})


@pytest.fixture
def outbound() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def fast_config() -> ShopfloorConfig:
    """No backoff waits and short debounce for quick tests."""
    query = QueryConfig(retry_count=0, retry_delay=0, timeout=5.0)
    return ShopfloorConfig(
        work_orders=ListConfig(ttl=30.0, maxsize=10, debounce=0.01, query=query),
        reports=ListConfig(ttl=60.0, realtime=False, query=query),
        dispatch=DispatchConfig(max_attempts=2, retry_backoff=0),
    )


@pytest.fixture
def sf(fast_config: ShopfloorConfig, outbound: RecordingTransport):
    shop = Shopfloor.open(config=fast_config, transport=httpx.MockTransport(outbound))
    yield shop
    shop.close()
