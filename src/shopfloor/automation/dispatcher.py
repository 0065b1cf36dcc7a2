"""ActionDispatcher -- executes would-execute rule results against storage.

Each action type maps to one handler. Handlers raise ActionDispatchError
subclasses for expected failures; any exception is caught per rule and
recorded on that rule's DispatchOutcome, so one failing rule never stops
the others. When a Session is supplied, each rule runs inside its own
SAVEPOINT and a failing rule's partial writes are rolled back.

Rules are dispatched sequentially in execution order.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
from datetime import date
from typing import TYPE_CHECKING, Any, Callable, Iterable

from shopfloor.automation.conditions import coerce_text
from shopfloor.automation.outgoing import OutgoingWebhookClient
from shopfloor.exceptions import (
    ActionDispatchError,
    InvalidFieldValueError,
    ItemNotFoundError,
    NoAdminUserError,
    WorkOrderNotFoundError,
)
from shopfloor.models.entities import ProductType, WorkOrderStatus
from shopfloor.models.evaluation import (
    DispatchOutcome,
    ProcessingReport,
    RuleEvaluationResult,
)
from shopfloor.models.rules import ActionType, AutomationRule
from shopfloor.storage.schema import (
    ActivityLogRow,
    WorkOrderItemRow,
    WorkOrderRow,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from shopfloor.storage.repositories import (
        ActivityLogRepository,
        ProfileRepository,
        WorkOrderItemRepository,
        WorkOrderRepository,
    )

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _text(value: Any) -> str | None:
    text = coerce_text(value)
    if text is None:
        return None
    text = text.strip()
    return text or None


def _positive_int(field: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidFieldValueError(field, value, "expected a positive integer")
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidFieldValueError(field, value, "expected a positive integer") from None
    if not number.is_integer() or number < 1:
        raise InvalidFieldValueError(field, value, "expected a positive integer")
    return int(number)


def _product_type(value: Any) -> ProductType:
    text = (_text(value) or "").upper().replace("-", "_")
    try:
        return ProductType(text)
    except ValueError:
        allowed = ", ".join(p.value for p in ProductType)
        raise InvalidFieldValueError("productType", value, f"expected one of {allowed}") from None


def _status(field: str, value: Any) -> WorkOrderStatus:
    text = (_text(value) or "").lower().replace(" ", "_").replace("-", "_")
    try:
        return WorkOrderStatus(text)
    except ValueError:
        allowed = ", ".join(s.value for s in WorkOrderStatus)
        raise InvalidFieldValueError(field, value, f"expected one of {allowed}") from None


def _date(field: str, value: Any) -> date | None:
    text = _text(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise InvalidFieldValueError(field, value, "expected an ISO date") from None


def _failed(evaluation: RuleEvaluationResult) -> DispatchOutcome:
    return DispatchOutcome(
        rule_id=evaluation.rule_id,
        rule_name=evaluation.rule_name,
        action_type=evaluation.action_type,
        success=False,
        error=evaluation.skip_reason,
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ActionDispatcher:
    """Performs the side effect of each would-execute rule."""

    def __init__(
        self,
        *,
        work_orders: WorkOrderRepository,
        items: WorkOrderItemRepository,
        profiles: ProfileRepository,
        activity: ActivityLogRepository,
        outgoing: OutgoingWebhookClient | None = None,
        session: Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._work_orders = work_orders
        self._items = items
        self._profiles = profiles
        self._activity = activity
        self._outgoing = outgoing or OutgoingWebhookClient()
        self._session = session
        self._clock = clock
        self._handlers: dict[ActionType, Callable[..., dict]] = {
            ActionType.CREATE_WORK_ORDER: self._create_work_order,
            ActionType.UPDATE_WORK_ORDER_STATUS: self._update_work_order_status,
            ActionType.UPDATE_ITEM_STATUS: self._update_item_status,
            ActionType.LOG_ACTIVITY: self._log_activity,
            ActionType.TRIGGER_OUTGOING_WEBHOOK: self._trigger_outgoing_webhook,
        }

    def _savepoint(self) -> contextlib.AbstractContextManager:
        if self._session is None:
            return contextlib.nullcontext()
        return self._session.begin_nested()

    def _epoch_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def dispatch(
        self,
        rule: AutomationRule,
        evaluation: RuleEvaluationResult,
        payload: Any,
        *,
        webhook_id: str,
        secret: str | None = None,
    ) -> DispatchOutcome:
        """Execute one rule. Never raises for action failures.

        Raises:
            ValueError: If *evaluation* is not a would-execute result.
        """
        if not evaluation.would_execute:
            raise ValueError(f"Rule {rule.name!r} would not execute; nothing to dispatch")
        handler = self._handlers[rule.action_type]
        values = evaluation.values()
        try:
            with self._savepoint():
                result = handler(values, payload=payload, webhook_id=webhook_id, secret=secret)
        except ActionDispatchError as exc:
            logger.warning("Rule %r (%s) failed: %s", rule.name, rule.action_type.value, exc)
            return DispatchOutcome(
                rule_id=rule.id,
                rule_name=rule.name,
                action_type=rule.action_type,
                success=False,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception(
                "Rule %r (%s) raised %s", rule.name, rule.action_type.value, type(exc).__name__
            )
            return DispatchOutcome(
                rule_id=rule.id,
                rule_name=rule.name,
                action_type=rule.action_type,
                success=False,
                error=str(exc) or type(exc).__name__,
            )
        logger.info("Rule %r executed %s", rule.name, rule.action_type.value)
        return DispatchOutcome(
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=rule.action_type,
            success=True,
            result=result,
        )

    def dispatch_all(
        self,
        pairs: Iterable[tuple[AutomationRule | None, RuleEvaluationResult]],
        payload: Any,
        *,
        webhook_id: str,
        secret: str | None = None,
    ) -> ProcessingReport:
        """Dispatch every would-execute pair in order and collect outcomes.

        A rule whose condition passed but which lacks required fields gets a
        failed outcome without running, as does an enabled rule that no
        longer validates (its rule is None). Rules skipped by their condition
        or because they are disabled produce no outcome.
        """
        pairs = list(pairs)
        outcomes: list[DispatchOutcome] = []
        for rule, evaluation in pairs:
            if rule is None or not evaluation.enabled:
                if evaluation.enabled and evaluation.rule_error:
                    outcomes.append(_failed(evaluation))
            elif evaluation.would_execute:
                outcomes.append(
                    self.dispatch(rule, evaluation, payload, webhook_id=webhook_id, secret=secret)
                )
            elif evaluation.missing_required and (
                evaluation.condition_result is None or evaluation.condition_result.passed
            ):
                outcomes.append(_failed(evaluation))
        return ProcessingReport(
            outcomes=tuple(outcomes),
            evaluations=tuple(evaluation for _, evaluation in pairs),
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _unique_stamp(self, exists: Callable[[int], bool]) -> int:
        stamp = self._epoch_ms()
        while exists(stamp):
            stamp += 1
        return stamp

    def _create_work_order(self, values: dict, **ctx: Any) -> dict:
        product_type = _product_type(values.get("productType"))
        quantity = _positive_int("quantity", values.get("quantity"))

        wo_number = _text(values.get("workOrderNumber"))
        if wo_number is None:
            stamp = self._unique_stamp(
                lambda s: self._work_orders.get_by_number(f"WO-{s}") is not None
            )
            wo_number = f"WO-{stamp}"
        elif self._work_orders.get_by_number(wo_number) is not None:
            raise InvalidFieldValueError("workOrderNumber", wo_number, "already exists")

        admin_id = self._profiles.first_user_with_role(ADMIN_ROLE)
        if admin_id is None:
            raise NoAdminUserError()

        notes = values.get("notes")
        if isinstance(notes, (dict, list)):
            notes = json.dumps(notes, default=str)

        work_order = WorkOrderRow(
            wo_number=wo_number,
            product_type=product_type.value,
            batch_size=quantity,
            status=WorkOrderStatus.PLANNED.value,
            created_by=admin_id,
            customer_name=_text(values.get("customer")),
            external_order_number=_text(values.get("externalReference")),
            start_date=_date("startDate", values.get("startDate")),
            shipping_date=_date("shippingDate", values.get("shippingDate")),
            notes=_text(notes),
        )
        self._work_orders.save(work_order)

        prefix = product_type.serial_prefix
        stamp = self._unique_stamp(
            lambda s: self._items.get_by_serial(f"{prefix}-{s}-001") is not None
        )
        items = [
            WorkOrderItemRow(
                work_order_id=work_order.id,
                serial_number=f"{prefix}-{stamp}-{position:03d}",
                position_in_batch=position,
                status=WorkOrderStatus.PLANNED.value,
                current_step=1,
            )
            for position in range(1, quantity + 1)
        ]
        self._items.save_many(items)
        return {
            "work_order_id": work_order.id,
            "wo_number": wo_number,
            "items_created": len(items),
        }

    def _update_work_order_status(self, values: dict, **ctx: Any) -> dict:
        wo_number = _text(values.get("workOrderNumber"))
        if wo_number is None:
            raise InvalidFieldValueError("workOrderNumber", values.get("workOrderNumber"), "empty")
        status = _status("status", values.get("status"))
        work_order = self._work_orders.get_by_number(wo_number)
        if work_order is None:
            raise WorkOrderNotFoundError(wo_number)

        fields: dict[str, Any] = {"status": status.value}
        if status is WorkOrderStatus.COMPLETED and work_order.completed_at is None:
            fields["completed_at"] = utcnow()
        self._work_orders.update(work_order, **fields)
        return {"wo_number": wo_number, "status": status.value}

    def _update_item_status(self, values: dict, **ctx: Any) -> dict:
        serial = _text(values.get("serialNumber"))
        if serial is None:
            raise InvalidFieldValueError("serialNumber", values.get("serialNumber"), "empty")

        updates: dict[str, Any] = {}
        if _text(values.get("status")) is not None:
            updates["status"] = _status("status", values.get("status")).value
        if _text(values.get("currentStep")) is not None:
            updates["current_step"] = _positive_int("currentStep", values.get("currentStep"))
        if not updates:
            raise ActionDispatchError("No updates specified")

        item = self._items.get_by_serial(serial)
        if item is None:
            raise ItemNotFoundError(serial)
        fields = dict(updates)
        if updates.get("status") == WorkOrderStatus.COMPLETED.value and item.completed_at is None:
            fields["completed_at"] = utcnow()
        self._items.update(item, **fields)
        return {"serial_number": serial, "updates": updates}

    def _log_activity(self, values: dict, *, payload: Any, webhook_id: str, **ctx: Any) -> dict:
        action = _text(values.get("action")) or "webhook_triggered"
        entity_type = _text(values.get("entityType")) or "webhook"
        entity_id = _text(values.get("entityId")) or webhook_id
        details = values["details"] if "details" in values else payload
        self._activity.save(
            ActivityLogRow(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
            )
        )
        return {"action": action, "entity_type": entity_type, "entity_id": entity_id}

    def _trigger_outgoing_webhook(
        self, values: dict, *, payload: Any, secret: str | None = None, **ctx: Any
    ) -> dict:
        url = _text(values.get("webhookUrl"))
        if url is None:
            raise InvalidFieldValueError("webhookUrl", values.get("webhookUrl"), "empty")
        delivery = self._outgoing.send(url, payload, secret=secret)
        return {
            "url": delivery.url,
            "status": delivery.status_code,
            "delivery_id": delivery.delivery_id,
            "attempts": delivery.attempts,
        }

    def close(self) -> None:
        self._outgoing.close()
