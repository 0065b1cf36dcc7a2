"""Abstract repository interfaces for Shopfloor storage.

Defines ABC interfaces for all database operations. No SQLAlchemy
imports here -- pure abstract contracts.

Concrete implementations are in sqlite.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Collection, Sequence

if TYPE_CHECKING:
    from datetime import datetime

    from shopfloor.storage.schema import (
        ActivityLogRow,
        AutomationRuleRow,
        IncomingWebhookRow,
        OperatorAssignmentRow,
        ProfileRow,
        WebhookLogRow,
        WorkOrderItemRow,
        WorkOrderRow,
    )


class WorkOrderRepository(ABC):
    """Abstract interface for work order storage."""

    @abstractmethod
    def get(self, work_order_id: str) -> WorkOrderRow | None:
        ...

    @abstractmethod
    def get_by_number(self, wo_number: str) -> WorkOrderRow | None:
        """Look up a work order by its business number."""
        ...

    @abstractmethod
    def save(self, work_order: WorkOrderRow) -> None:
        ...

    @abstractmethod
    def update(self, work_order: WorkOrderRow, **fields: object) -> None:
        """Apply column updates to an existing work order."""
        ...

    @abstractmethod
    def list(
        self,
        *,
        statuses: Collection[str] | None = None,
        exclude_statuses: Collection[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        before: tuple[datetime, str] | None = None,
    ) -> Sequence[WorkOrderRow]:
        """List work orders newest first (created_at DESC, id DESC).

        Args:
            statuses: Inclusion filter on status.
            exclude_statuses: Exclusion filter on status.
            limit: Maximum rows.
            offset: Rows to skip.
            before: Keyset cursor ``(created_at, id)``; only rows strictly
                after it in the ordering are returned.
        """
        ...

    @abstractmethod
    def count(
        self,
        *,
        statuses: Collection[str] | None = None,
        exclude_statuses: Collection[str] | None = None,
    ) -> int:
        """Exact row count for the same filters as list()."""
        ...


class WorkOrderItemRepository(ABC):
    """Abstract interface for work order item storage."""

    @abstractmethod
    def get_by_serial(self, serial_number: str) -> WorkOrderItemRow | None:
        ...

    @abstractmethod
    def list_for_work_orders(self, work_order_ids: Collection[str]) -> Sequence[WorkOrderItemRow]:
        """All items of the given work orders in one query."""
        ...

    @abstractmethod
    def save_many(self, items: Sequence[WorkOrderItemRow]) -> None:
        ...

    @abstractmethod
    def update(self, item: WorkOrderItemRow, **fields: object) -> None:
        ...


class ProfileRepository(ABC):
    """Abstract interface for user profiles and roles."""

    @abstractmethod
    def get(self, profile_id: str) -> ProfileRow | None:
        ...

    @abstractmethod
    def get_many(self, profile_ids: Collection[str]) -> Sequence[ProfileRow]:
        """Profiles for the given ids in one query. Unknown ids are skipped."""
        ...

    @abstractmethod
    def save(self, profile: ProfileRow) -> None:
        ...

    @abstractmethod
    def add_role(self, user_id: str, role: str) -> None:
        ...

    @abstractmethod
    def first_user_with_role(self, role: str) -> str | None:
        """Id of the earliest user holding *role*, or None."""
        ...


class OperatorAssignmentRepository(ABC):
    """Abstract interface for operator-to-work-order assignments."""

    @abstractmethod
    def list_for_work_orders(
        self, work_order_ids: Collection[str]
    ) -> Sequence[OperatorAssignmentRow]:
        """All assignments (with operator profile loaded) in one query."""
        ...

    @abstractmethod
    def save(self, assignment: OperatorAssignmentRow) -> None:
        ...


class WebhookRepository(ABC):
    """Abstract interface for incoming webhook endpoints."""

    @abstractmethod
    def get(self, webhook_id: str) -> IncomingWebhookRow | None:
        ...

    @abstractmethod
    def get_by_endpoint_key(self, endpoint_key: str) -> IncomingWebhookRow | None:
        ...

    @abstractmethod
    def list_all(self) -> Sequence[IncomingWebhookRow]:
        ...

    @abstractmethod
    def save(self, webhook: IncomingWebhookRow) -> None:
        ...

    @abstractmethod
    def update(self, webhook: IncomingWebhookRow, **fields: object) -> None:
        ...

    @abstractmethod
    def record_trigger(self, webhook: IncomingWebhookRow, at: datetime) -> None:
        """Bump trigger_count and set last_triggered_at."""
        ...


class AutomationRuleRepository(ABC):
    """Abstract interface for automation rules."""

    @abstractmethod
    def get(self, rule_id: str) -> AutomationRuleRow | None:
        ...

    @abstractmethod
    def list_for_webhook(
        self, webhook_id: str, *, enabled_only: bool = False
    ) -> Sequence[AutomationRuleRow]:
        """Rules of one webhook ordered by sort_order (ties by created_at)."""
        ...

    @abstractmethod
    def save(self, rule: AutomationRuleRow) -> None:
        ...

    @abstractmethod
    def update(self, rule: AutomationRuleRow, **fields: object) -> None:
        ...

    @abstractmethod
    def delete(self, rule: AutomationRuleRow) -> None:
        ...

    @abstractmethod
    def next_sort_order(self, webhook_id: str) -> int:
        """One past the highest sort_order of the webhook's rules (0 if none)."""
        ...


class WebhookLogRepository(ABC):
    """Abstract interface for webhook execution logs."""

    @abstractmethod
    def save(self, log: WebhookLogRow) -> None:
        ...

    @abstractmethod
    def list_for_webhook(self, webhook_id: str, *, limit: int = 50) -> Sequence[WebhookLogRow]:
        """Newest first."""
        ...


class ActivityLogRepository(ABC):
    """Abstract interface for the audit trail."""

    @abstractmethod
    def save(self, entry: ActivityLogRow) -> None:
        ...

    @abstractmethod
    def list(
        self, *, entity_type: str | None = None, limit: int = 50
    ) -> Sequence[ActivityLogRow]:
        """Newest first."""
        ...
