"""Shopfloor -- the public entry point wiring storage, queries and automation.

Users interact with ``Shopfloor.open()``, then the list queries
(``work_orders()``, ``production_reports()``), rule and webhook management,
and the webhook pipeline (``test_webhook()``, ``receive_webhook()``).

Not thread-safe. Each thread should open its own ``Shopfloor``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Optional

import httpx

from shopfloor.automation.dispatcher import ADMIN_ROLE, ActionDispatcher
from shopfloor.automation.engine import RuleEngine
from shopfloor.automation.harness import WebhookTestHarness
from shopfloor.automation.outgoing import OutgoingWebhookClient
from shopfloor.automation.receiver import WebhookReceiver
from shopfloor.automation.security import generate_endpoint_key, generate_secret
from shopfloor.exceptions import (
    InvalidPayloadError,
    RuleNotFoundError,
    RuleValidationError,
    WebhookAuthError,
    WebhookNotFoundError,
)
from shopfloor.models.config import ShopfloorConfig
from shopfloor.models.entities import IncomingWebhook
from shopfloor.models.rules import AutomationRule, RuleCondition
from shopfloor.query.cache import EntityCache
from shopfloor.query.keys import cache_key
from shopfloor.query.lists import (
    ListSources,
    PaginatedWorkOrderQuery,
    ProductionReportListQuery,
    ReportFilters,
    WorkOrderFilters,
    WorkOrderListQuery,
)
from shopfloor.storage.changes import ChangeFeed
from shopfloor.storage.engine import create_session_factory, create_shopfloor_engine, init_db
from shopfloor.storage.schema import AutomationRuleRow, IncomingWebhookRow, ProfileRow
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

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

    from shopfloor.models.evaluation import ProcessingReport, TestReport
    from shopfloor.query.resilient import SleepFn
    from shopfloor.storage.schema import WebhookLogRow

logger = logging.getLogger(__name__)

_RULE_FIELDS = frozenset(
    {"name", "action_type", "field_mappings", "condition", "enabled", "sort_order"}
)


class Shopfloor:
    """Primary entry point for a shop floor process.

    Create one via :meth:`Shopfloor.open`. Example::

        with Shopfloor.open("shop.db") as sf:
            webhook, secret = sf.create_webhook("ERP orders")
            sf.create_rule(webhook.id, "New order", "create_work_order",
                           field_mappings={"productType": "product",
                                           "quantity": "qty"})
            report = sf.receive_webhook(webhook.endpoint_key, body, secret=secret)
    """

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def __init__(
        self,
        *,
        engine: Engine | None,
        session: Session,
        config: ShopfloorConfig,
        feed: ChangeFeed | None = None,
        outgoing: OutgoingWebhookClient | None = None,
    ) -> None:
        self._engine = engine
        self._session = session
        self._config = config
        self._feed = feed or ChangeFeed()
        self._closed = False

        self._work_order_repo = SqliteWorkOrderRepository(session, self._feed)
        self._item_repo = SqliteWorkOrderItemRepository(session, self._feed)
        self._profile_repo = SqliteProfileRepository(session, self._feed)
        self._assignment_repo = SqliteOperatorAssignmentRepository(session, self._feed)
        self._webhook_repo = SqliteWebhookRepository(session, self._feed)
        self._rule_repo = SqliteAutomationRuleRepository(session, self._feed)
        self._log_repo = SqliteWebhookLogRepository(session, self._feed)
        self._activity_repo = SqliteActivityLogRepository(session, self._feed)

        self._sources = ListSources(
            work_orders=self._work_order_repo,
            items=self._item_repo,
            profiles=self._profile_repo,
            assignments=self._assignment_repo,
        )
        self._work_order_cache = EntityCache(config.work_orders.maxsize, name="work_orders")
        self._report_cache = EntityCache(config.reports.maxsize, name="reports")

        rule_engine = RuleEngine()
        self._dispatcher = ActionDispatcher(
            work_orders=self._work_order_repo,
            items=self._item_repo,
            profiles=self._profile_repo,
            activity=self._activity_repo,
            outgoing=outgoing or OutgoingWebhookClient(config.dispatch),
            session=session,
        )
        self._harness = WebhookTestHarness(
            webhooks=self._webhook_repo,
            rules=self._rule_repo,
            logs=self._log_repo,
            dispatcher=self._dispatcher,
            engine=rule_engine,
        )
        self._receiver = WebhookReceiver(
            webhooks=self._webhook_repo,
            rules=self._rule_repo,
            logs=self._log_repo,
            dispatcher=self._dispatcher,
            engine=rule_engine,
        )

    @classmethod
    def open(
        cls,
        path: str | None = None,
        *,
        config: ShopfloorConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> Shopfloor:
        """Open (or create) a Shopfloor database.

        Args:
            path: SQLite path. ``":memory:"`` (the default) for in-memory.
                Overrides ``config.db_path`` when given.
            config: Process configuration. Defaults created if *None*.
            transport: httpx transport for outbound webhooks (tests pass
                an ``httpx.MockTransport``).
        """
        if config is None:
            config = ShopfloorConfig(db_path=path or ":memory:")
        elif path is not None:
            config = config.model_copy(update={"db_path": path})

        engine = create_shopfloor_engine(config.db_path, url=config.db_url)
        init_db(engine)
        session = create_session_factory(engine)()
        outgoing = OutgoingWebhookClient(config.dispatch, transport=transport)
        return cls(engine=engine, session=session, config=config, outgoing=outgoing)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> ShopfloorConfig:
        return self._config

    @property
    def session(self) -> Session:
        return self._session

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def sources(self) -> ListSources:
        return self._sources

    @property
    def work_order_cache(self) -> EntityCache:
        return self._work_order_cache

    @property
    def report_cache(self) -> EntityCache:
        return self._report_cache

    # ------------------------------------------------------------------
    # List queries
    # ------------------------------------------------------------------

    def work_orders(
        self,
        filters: WorkOrderFilters | None = None,
        *,
        sleep: Optional[SleepFn] = None,
    ) -> WorkOrderListQuery:
        """A work order list query. Use as ``async with`` or call start()."""
        kwargs: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        return WorkOrderListQuery(
            self._sources,
            self._work_order_cache,
            filters=filters,
            config=self._config.work_orders,
            feed=self._feed,
            **kwargs,
        )

    def production_reports(
        self,
        filters: ReportFilters | None = None,
        *,
        sleep: Optional[SleepFn] = None,
    ) -> ProductionReportListQuery:
        kwargs: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        return ProductionReportListQuery(
            self._sources,
            self._report_cache,
            filters=filters,
            config=self._config.reports,
            feed=self._feed,
            **kwargs,
        )

    def paginated_work_orders(
        self,
        filters: WorkOrderFilters | None = None,
        *,
        page_size: int = 25,
        exact_count: bool = False,
    ) -> PaginatedWorkOrderQuery:
        return PaginatedWorkOrderQuery(
            self._sources,
            filters=filters,
            page_size=page_size,
            exact_count=exact_count,
            config=self._config.work_orders.query,
        )

    def invalidate_work_orders(self) -> None:
        """Drop every cached work order list (all filter sets)."""
        self._work_order_cache.clear()

    def invalidate_reports(self) -> None:
        self._report_cache.clear()

    def prefetch_work_orders(self) -> bool:
        """Warm the cache for the default work order filters.

        Returns True when the backend was read. Failures are logged, never
        raised.
        """
        return self._prefetch(
            self._work_order_cache,
            cache_key(WorkOrderListQuery.namespace, WorkOrderFilters()),
            self._config.work_orders.ttl,
            lambda: self.work_orders().load(),
        )

    def prefetch_reports(self) -> bool:
        return self._prefetch(
            self._report_cache,
            cache_key(ProductionReportListQuery.namespace, ReportFilters()),
            self._config.reports.ttl,
            lambda: self.production_reports().load(),
        )

    def _prefetch(self, cache: EntityCache, key: str, ttl: float, load: Any) -> bool:
        if cache.get_fresh(key, ttl) is not None:
            return False
        try:
            cache.set(key, load())
        except Exception as exc:
            logger.warning("Prefetch of %s failed: %s", key, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def add_profile(
        self,
        full_name: str,
        *,
        roles: tuple[str, ...] = (),
        avatar_url: str | None = None,
    ) -> str:
        """Create a user profile with optional roles. Returns the user id."""
        profile = ProfileRow(full_name=full_name, avatar_url=avatar_url)
        self._profile_repo.save(profile)
        for role in roles:
            self._profile_repo.add_role(profile.id, role)
        self._session.commit()
        return profile.id

    def add_admin(self, full_name: str) -> str:
        return self.add_profile(full_name, roles=(ADMIN_ROLE,))

    # ------------------------------------------------------------------
    # Webhook endpoints
    # ------------------------------------------------------------------

    def _require_webhook(self, webhook_id: str) -> IncomingWebhookRow:
        row = self._webhook_repo.get(webhook_id)
        if row is None:
            raise WebhookNotFoundError(webhook_id)
        return row

    def create_webhook(
        self,
        name: str,
        *,
        description: str | None = None,
        created_by: str | None = None,
    ) -> tuple[IncomingWebhook, str]:
        """Create an endpoint with a random key and secret.

        Returns:
            ``(webhook, secret)``. The secret is not part of IncomingWebhook.
        """
        row = IncomingWebhookRow(
            name=name,
            description=description,
            endpoint_key=generate_endpoint_key(),
            secret_key=generate_secret(),
            created_by=created_by,
        )
        self._webhook_repo.save(row)
        self._session.commit()
        logger.info("Created webhook %r (%s)", name, row.endpoint_key)
        return IncomingWebhook.from_row(row), row.secret_key

    def get_webhook(self, webhook_id: str) -> IncomingWebhook:
        return IncomingWebhook.from_row(self._require_webhook(webhook_id))

    def list_webhooks(self) -> list[IncomingWebhook]:
        return [IncomingWebhook.from_row(row) for row in self._webhook_repo.list_all()]

    def regenerate_secret(self, webhook_id: str) -> str:
        """Replace the webhook's secret. Returns the new secret."""
        row = self._require_webhook(webhook_id)
        secret = generate_secret()
        self._webhook_repo.update(row, secret_key=secret)
        self._session.commit()
        return secret

    def set_webhook_enabled(self, webhook_id: str, enabled: bool) -> IncomingWebhook:
        row = self._require_webhook(webhook_id)
        self._webhook_repo.update(row, enabled=enabled)
        self._session.commit()
        return IncomingWebhook.from_row(row)

    def webhook_logs(self, webhook_id: str, *, limit: int = 50) -> list[WebhookLogRow]:
        """Most recent log rows for a webhook, newest first."""
        self._require_webhook(webhook_id)
        return list(self._log_repo.list_for_webhook(webhook_id, limit=limit))

    # ------------------------------------------------------------------
    # Automation rules
    # ------------------------------------------------------------------

    def _require_rule(self, rule_id: str) -> AutomationRuleRow:
        row = self._rule_repo.get(rule_id)
        if row is None:
            raise RuleNotFoundError(rule_id)
        return row

    def create_rule(
        self,
        webhook_id: str,
        name: str,
        action_type: str,
        *,
        field_mappings: Mapping[str, str] | None = None,
        condition: Mapping[str, Any] | RuleCondition | None = None,
        enabled: bool = True,
        sort_order: int | None = None,
    ) -> AutomationRule:
        """Validate and store a rule on *webhook_id*.

        ``sort_order`` defaults to the next free position.

        Raises:
            WebhookNotFoundError: If the webhook does not exist.
            RuleValidationError: If the rule definition is invalid.
        """
        self._require_webhook(webhook_id)
        if sort_order is None:
            sort_order = self._rule_repo.next_sort_order(webhook_id)
        rule = AutomationRule.build(
            id="",
            webhook_id=webhook_id,
            name=name,
            action_type=action_type,
            field_mappings=dict(field_mappings or {}),
            condition=_condition(condition),
            enabled=enabled,
            sort_order=sort_order,
        )
        row = AutomationRuleRow(
            incoming_webhook_id=webhook_id,
            name=rule.name,
            action_type=rule.action_type.value,
            field_mappings=rule.mappings_raw(),
            conditions=rule.condition.to_raw() if rule.condition else {},
            enabled=rule.enabled,
            sort_order=rule.sort_order,
        )
        self._rule_repo.save(row)
        self._session.commit()
        return AutomationRule.from_row(row)

    def update_rule(self, rule_id: str, **changes: Any) -> AutomationRule:
        """Change any of name, action_type, field_mappings, condition,
        enabled, sort_order. The merged rule is re-validated as a whole.
        """
        unknown = set(changes) - _RULE_FIELDS
        if unknown:
            raise RuleValidationError(f"Unknown rule field(s): {', '.join(sorted(unknown))}")
        row = self._require_rule(rule_id)
        current = AutomationRule.from_row(row)
        merged = {
            "name": current.name,
            "action_type": current.action_type,
            "field_mappings": current.mappings_raw(),
            "condition": current.condition,
            "enabled": current.enabled,
            "sort_order": current.sort_order,
        }
        merged.update(changes)
        merged["condition"] = _condition(merged["condition"])
        rule = AutomationRule.build(id=row.id, webhook_id=row.incoming_webhook_id, **merged)
        self._rule_repo.update(
            row,
            name=rule.name,
            action_type=rule.action_type.value,
            field_mappings=rule.mappings_raw(),
            conditions=rule.condition.to_raw() if rule.condition else {},
            enabled=rule.enabled,
            sort_order=rule.sort_order,
        )
        self._session.commit()
        return AutomationRule.from_row(row)

    def toggle_rule(self, rule_id: str, enabled: bool | None = None) -> AutomationRule:
        """Enable or disable a rule. Flips the current state when *enabled* is None."""
        row = self._require_rule(rule_id)
        target = (not row.enabled) if enabled is None else enabled
        self._rule_repo.update(row, enabled=target)
        self._session.commit()
        return AutomationRule.from_row(row)

    def delete_rule(self, rule_id: str) -> None:
        self._rule_repo.delete(self._require_rule(rule_id))
        self._session.commit()

    def get_rule(self, rule_id: str) -> AutomationRule:
        return AutomationRule.from_row(self._require_rule(rule_id))

    def list_rules(self, webhook_id: str) -> list[AutomationRule]:
        """Rules of one webhook ordered by sort_order."""
        self._require_webhook(webhook_id)
        return [AutomationRule.from_row(row) for row in self._rule_repo.list_for_webhook(webhook_id)]

    # ------------------------------------------------------------------
    # Webhook processing
    # ------------------------------------------------------------------

    def test_webhook(
        self, webhook_id: str, payload: Any, *, dry_run: bool = True
    ) -> TestReport:
        """Evaluate a webhook's rules against *payload*.

        Dry runs touch nothing. A live run dispatches would-execute rules and
        commits their effects together with an ``is_test`` log row.
        """
        try:
            report = self._harness.test(webhook_id, payload, dry_run=dry_run)
        except Exception:
            self._session.rollback()
            raise
        if not dry_run:
            self._session.commit()
            self._after_dispatch(report.live_result)
        return report

    def receive_webhook(
        self,
        endpoint_key: str,
        body: Any,
        *,
        secret: str | None = None,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> ProcessingReport:
        """Run the inbound pipeline for one request.

        Rejected requests raise a WebhookError subclass whose
        ``status_code`` is the HTTP response status. Failed authentication
        and unparsable bodies are still logged.
        """
        try:
            report = self._receiver.receive(
                endpoint_key, body, secret=secret, signature=signature, headers=headers
            )
        except (WebhookAuthError, InvalidPayloadError):
            self._session.commit()
            raise
        except Exception:
            self._session.rollback()
            raise
        self._session.commit()
        self._after_dispatch(report)
        return report

    def _after_dispatch(self, report: ProcessingReport | None) -> None:
        if report is not None and report.executed:
            self.invalidate_work_orders()
            self.invalidate_reports()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the outbound client and session, and dispose the engine."""
        if self._closed:
            return
        self._closed = True
        self._dispatcher.close()
        self._feed.clear()
        self._sources.close()
        self._session.close()
        if self._engine is not None:
            self._engine.dispose()

    def __enter__(self) -> Shopfloor:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()

    def __repr__(self) -> str:
        if self._closed:
            return f"Shopfloor(db='{self._config.db_path}', closed=True)"
        return f"Shopfloor(db='{self._config.db_path}')"


def _condition(value: Mapping[str, Any] | RuleCondition | None) -> RuleCondition | None:
    if value is None or isinstance(value, RuleCondition):
        return value
    try:
        return RuleCondition.from_raw(value)
    except ValueError as exc:
        raise RuleValidationError(f"Invalid condition: {exc}") from exc
