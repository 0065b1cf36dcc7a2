"""SQLite implementations of repository interfaces.

All repositories use SQLAlchemy 2.0-style queries (select() + session.execute()).
Each repository takes a Session in its constructor, plus an optional
ChangeFeed that receives one ChangeEvent after every flushed write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Collection, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from shopfloor.storage.changes import ChangeFeed, ChangeKind
from shopfloor.storage.repositories import (
    ActivityLogRepository,
    AutomationRuleRepository,
    OperatorAssignmentRepository,
    ProfileRepository,
    WebhookLogRepository,
    WebhookRepository,
    WorkOrderItemRepository,
    WorkOrderRepository,
)
from shopfloor.storage.schema import (
    ActivityLogRow,
    AutomationRuleRow,
    IncomingWebhookRow,
    OperatorAssignmentRow,
    ProfileRow,
    UserRoleRow,
    WebhookLogRow,
    WorkOrderItemRow,
    WorkOrderRow,
)


class _SqliteRepository:
    """Shared session handling and change publishing."""

    table: str = ""

    def __init__(self, session: Session, feed: ChangeFeed | None = None) -> None:
        self._session = session
        self._feed = feed

    def _emit(self, kind: ChangeKind, record_id: str | None = None) -> None:
        if self._feed is not None:
            self._feed.emit(self.table, kind, record_id)

    def _add(self, row: object) -> None:
        self._session.add(row)
        self._session.flush()
        self._emit(ChangeKind.INSERT, getattr(row, "id", None))

    def _apply(self, row: object, fields: dict, record_id: str | None) -> None:
        for name, value in fields.items():
            if not hasattr(row, name):
                raise AttributeError(f"{type(row).__name__} has no column '{name}'")
            setattr(row, name, value)
        self._session.flush()
        self._emit(ChangeKind.UPDATE, record_id)


class SqliteWorkOrderRepository(_SqliteRepository, WorkOrderRepository):
    """SQLite implementation of work order repository."""

    table = "work_orders"

    def get(self, work_order_id: str) -> WorkOrderRow | None:
        return self._session.get(WorkOrderRow, work_order_id)

    def get_by_number(self, wo_number: str) -> WorkOrderRow | None:
        stmt = select(WorkOrderRow).where(WorkOrderRow.wo_number == wo_number)
        return self._session.execute(stmt).scalar_one_or_none()

    def save(self, work_order: WorkOrderRow) -> None:
        self._add(work_order)

    def update(self, work_order: WorkOrderRow, **fields: object) -> None:
        self._apply(work_order, fields, work_order.id)

    def _conditions(
        self,
        statuses: Collection[str] | None,
        exclude_statuses: Collection[str] | None,
    ) -> list:
        conditions = []
        if statuses:
            conditions.append(WorkOrderRow.status.in_(list(statuses)))
        if exclude_statuses:
            conditions.append(WorkOrderRow.status.not_in(list(exclude_statuses)))
        return conditions

    def list(
        self,
        *,
        statuses: Collection[str] | None = None,
        exclude_statuses: Collection[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        before: tuple[datetime, str] | None = None,
    ) -> Sequence[WorkOrderRow]:
        conditions = self._conditions(statuses, exclude_statuses)
        if before is not None:
            created_at, row_id = before
            # Strictly after the cursor in (created_at DESC, id DESC) order.
            conditions.append(
                or_(
                    WorkOrderRow.created_at < created_at,
                    and_(WorkOrderRow.created_at == created_at, WorkOrderRow.id < row_id),
                )
            )
        stmt = select(WorkOrderRow).order_by(
            WorkOrderRow.created_at.desc(), WorkOrderRow.id.desc()
        )
        if conditions:
            stmt = stmt.where(and_(*conditions))
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars().all())

    def count(
        self,
        *,
        statuses: Collection[str] | None = None,
        exclude_statuses: Collection[str] | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(WorkOrderRow)
        conditions = self._conditions(statuses, exclude_statuses)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        return int(self._session.execute(stmt).scalar_one())


class SqliteWorkOrderItemRepository(_SqliteRepository, WorkOrderItemRepository):
    """SQLite implementation of work order item repository."""

    table = "work_order_items"

    def get_by_serial(self, serial_number: str) -> WorkOrderItemRow | None:
        stmt = select(WorkOrderItemRow).where(WorkOrderItemRow.serial_number == serial_number)
        return self._session.execute(stmt).scalar_one_or_none()

    def list_for_work_orders(self, work_order_ids: Collection[str]) -> Sequence[WorkOrderItemRow]:
        if not work_order_ids:
            return []
        stmt = (
            select(WorkOrderItemRow)
            .where(WorkOrderItemRow.work_order_id.in_(list(work_order_ids)))
            .order_by(WorkOrderItemRow.work_order_id, WorkOrderItemRow.position_in_batch)
        )
        return list(self._session.execute(stmt).scalars().all())

    def save_many(self, items: Sequence[WorkOrderItemRow]) -> None:
        if not items:
            return
        self._session.add_all(items)
        self._session.flush()
        self._emit(ChangeKind.INSERT)

    def update(self, item: WorkOrderItemRow, **fields: object) -> None:
        self._apply(item, fields, item.id)


class SqliteProfileRepository(_SqliteRepository, ProfileRepository):
    """SQLite implementation of profile and role repository."""

    table = "profiles"

    def get(self, profile_id: str) -> ProfileRow | None:
        return self._session.get(ProfileRow, profile_id)

    def get_many(self, profile_ids: Collection[str]) -> Sequence[ProfileRow]:
        if not profile_ids:
            return []
        stmt = select(ProfileRow).where(ProfileRow.id.in_(list(profile_ids)))
        return list(self._session.execute(stmt).scalars().all())

    def save(self, profile: ProfileRow) -> None:
        self._add(profile)

    def add_role(self, user_id: str, role: str) -> None:
        self._session.add(UserRoleRow(user_id=user_id, role=role))
        self._session.flush()

    def first_user_with_role(self, role: str) -> str | None:
        stmt = (
            select(UserRoleRow.user_id)
            .where(UserRoleRow.role == role)
            .order_by(UserRoleRow.created_at, UserRoleRow.id)
            .limit(1)
        )
        return self._session.execute(stmt).scalar_one_or_none()


class SqliteOperatorAssignmentRepository(_SqliteRepository, OperatorAssignmentRepository):
    """SQLite implementation of operator assignment repository."""

    table = "operator_assignments"

    def list_for_work_orders(
        self, work_order_ids: Collection[str]
    ) -> Sequence[OperatorAssignmentRow]:
        if not work_order_ids:
            return []
        stmt = (
            select(OperatorAssignmentRow)
            .where(OperatorAssignmentRow.work_order_id.in_(list(work_order_ids)))
            .order_by(OperatorAssignmentRow.created_at)
        )
        return list(self._session.execute(stmt).unique().scalars().all())

    def save(self, assignment: OperatorAssignmentRow) -> None:
        self._add(assignment)


class SqliteWebhookRepository(_SqliteRepository, WebhookRepository):
    """SQLite implementation of incoming webhook repository."""

    table = "incoming_webhooks"

    def get(self, webhook_id: str) -> IncomingWebhookRow | None:
        return self._session.get(IncomingWebhookRow, webhook_id)

    def get_by_endpoint_key(self, endpoint_key: str) -> IncomingWebhookRow | None:
        stmt = select(IncomingWebhookRow).where(IncomingWebhookRow.endpoint_key == endpoint_key)
        return self._session.execute(stmt).scalar_one_or_none()

    def list_all(self) -> Sequence[IncomingWebhookRow]:
        stmt = select(IncomingWebhookRow).order_by(IncomingWebhookRow.created_at)
        return list(self._session.execute(stmt).scalars().all())

    def save(self, webhook: IncomingWebhookRow) -> None:
        self._add(webhook)

    def update(self, webhook: IncomingWebhookRow, **fields: object) -> None:
        self._apply(webhook, fields, webhook.id)

    def record_trigger(self, webhook: IncomingWebhookRow, at: datetime) -> None:
        self._apply(
            webhook,
            {"trigger_count": (webhook.trigger_count or 0) + 1, "last_triggered_at": at},
            webhook.id,
        )


class SqliteAutomationRuleRepository(_SqliteRepository, AutomationRuleRepository):
    """SQLite implementation of automation rule repository."""

    table = "automation_rules"

    def get(self, rule_id: str) -> AutomationRuleRow | None:
        return self._session.get(AutomationRuleRow, rule_id)

    def list_for_webhook(
        self, webhook_id: str, *, enabled_only: bool = False
    ) -> Sequence[AutomationRuleRow]:
        stmt = select(AutomationRuleRow).where(
            AutomationRuleRow.incoming_webhook_id == webhook_id
        )
        if enabled_only:
            stmt = stmt.where(AutomationRuleRow.enabled.is_(True))
        stmt = stmt.order_by(AutomationRuleRow.sort_order, AutomationRuleRow.created_at)
        return list(self._session.execute(stmt).scalars().all())

    def save(self, rule: AutomationRuleRow) -> None:
        self._add(rule)

    def update(self, rule: AutomationRuleRow, **fields: object) -> None:
        self._apply(rule, fields, rule.id)

    def delete(self, rule: AutomationRuleRow) -> None:
        rule_id = rule.id
        self._session.delete(rule)
        self._session.flush()
        self._emit(ChangeKind.DELETE, rule_id)

    def next_sort_order(self, webhook_id: str) -> int:
        stmt = select(func.max(AutomationRuleRow.sort_order)).where(
            AutomationRuleRow.incoming_webhook_id == webhook_id
        )
        current = self._session.execute(stmt).scalar_one_or_none()
        return 0 if current is None else current + 1


class SqliteWebhookLogRepository(_SqliteRepository, WebhookLogRepository):
    """SQLite implementation of webhook log repository."""

    table = "webhook_logs"

    def save(self, log: WebhookLogRow) -> None:
        self._add(log)

    def list_for_webhook(self, webhook_id: str, *, limit: int = 50) -> Sequence[WebhookLogRow]:
        stmt = (
            select(WebhookLogRow)
            .where(WebhookLogRow.incoming_webhook_id == webhook_id)
            .order_by(WebhookLogRow.created_at.desc())
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars().all())


class SqliteActivityLogRepository(_SqliteRepository, ActivityLogRepository):
    """SQLite implementation of activity log repository."""

    table = "activity_logs"

    def save(self, entry: ActivityLogRow) -> None:
        self._add(entry)

    def list(
        self, *, entity_type: str | None = None, limit: int = 50
    ) -> Sequence[ActivityLogRow]:
        stmt = select(ActivityLogRow)
        if entity_type is not None:
            stmt = stmt.where(ActivityLogRow.entity_type == entity_type)
        stmt = stmt.order_by(ActivityLogRow.created_at.desc()).limit(limit)
        return list(self._session.execute(stmt).scalars().all())
