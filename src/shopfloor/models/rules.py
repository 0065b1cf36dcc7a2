"""Automation rule models.

An AutomationRule belongs to exactly one incoming webhook endpoint and
describes a (condition, field-mapping, action-type) triple evaluated per
inbound payload.

Field mappings are keyed by the closed FieldKey enum. Each ActionType
carries a fixed ActionSchema of required and optional keys, and a rule may
only map keys declared by its action's schema.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from shopfloor.exceptions import RuleValidationError

if TYPE_CHECKING:
    from shopfloor.storage.schema import AutomationRuleRow


class ActionType(str, enum.Enum):
    """Side-effecting operations a rule can trigger."""

    CREATE_WORK_ORDER = "create_work_order"
    UPDATE_WORK_ORDER_STATUS = "update_work_order_status"
    UPDATE_ITEM_STATUS = "update_item_status"
    LOG_ACTIVITY = "log_activity"
    TRIGGER_OUTGOING_WEBHOOK = "trigger_outgoing_webhook"

    def __str__(self) -> str:
        return self.value


class ConditionOperator(str, enum.Enum):
    """Comparison operators supported by rule conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    EXISTS = "exists"

    def __str__(self) -> str:
        return self.value


class FieldKey(str, enum.Enum):
    """Every field an action type can read from a payload."""

    PRODUCT_TYPE = "productType"
    QUANTITY = "quantity"
    WORK_ORDER_NUMBER = "workOrderNumber"
    CUSTOMER = "customer"
    EXTERNAL_REFERENCE = "externalReference"
    START_DATE = "startDate"
    SHIPPING_DATE = "shippingDate"
    NOTES = "notes"
    STATUS = "status"
    SERIAL_NUMBER = "serialNumber"
    CURRENT_STEP = "currentStep"
    ACTION = "action"
    ENTITY_TYPE = "entityType"
    ENTITY_ID = "entityId"
    DETAILS = "details"
    WEBHOOK_URL = "webhookUrl"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ActionSchema:
    """Fixed field contract of one action type."""

    required: tuple[FieldKey, ...]
    optional: tuple[FieldKey, ...] = ()

    @property
    def fields(self) -> tuple[FieldKey, ...]:
        """Required fields first, then optional, in declaration order."""
        return self.required + self.optional

    def is_required(self, key: FieldKey) -> bool:
        return key in self.required


ACTION_SCHEMAS: dict[ActionType, ActionSchema] = {
    ActionType.CREATE_WORK_ORDER: ActionSchema(
        required=(FieldKey.PRODUCT_TYPE, FieldKey.QUANTITY),
        optional=(
            FieldKey.WORK_ORDER_NUMBER,
            FieldKey.CUSTOMER,
            FieldKey.EXTERNAL_REFERENCE,
            FieldKey.START_DATE,
            FieldKey.SHIPPING_DATE,
            FieldKey.NOTES,
        ),
    ),
    ActionType.UPDATE_WORK_ORDER_STATUS: ActionSchema(
        required=(FieldKey.WORK_ORDER_NUMBER, FieldKey.STATUS),
    ),
    ActionType.UPDATE_ITEM_STATUS: ActionSchema(
        required=(FieldKey.SERIAL_NUMBER,),
        optional=(FieldKey.STATUS, FieldKey.CURRENT_STEP),
    ),
    ActionType.LOG_ACTIVITY: ActionSchema(
        required=(FieldKey.ACTION, FieldKey.ENTITY_TYPE),
        optional=(FieldKey.ENTITY_ID, FieldKey.DETAILS),
    ),
    ActionType.TRIGGER_OUTGOING_WEBHOOK: ActionSchema(
        required=(FieldKey.WEBHOOK_URL,),
    ),
}

# Snake-case keys written by older rule editors.
_LEGACY_KEYS: dict[str, FieldKey] = {
    "wo_number": FieldKey.WORK_ORDER_NUMBER,
    "product_type": FieldKey.PRODUCT_TYPE,
    "batch_size": FieldKey.QUANTITY,
    "customer_name": FieldKey.CUSTOMER,
    "external_order_number": FieldKey.EXTERNAL_REFERENCE,
    "scheduled_date": FieldKey.START_DATE,
    "shipping_date": FieldKey.SHIPPING_DATE,
    "serial_number": FieldKey.SERIAL_NUMBER,
    "current_step": FieldKey.CURRENT_STEP,
    "entity_type": FieldKey.ENTITY_TYPE,
    "entity_id": FieldKey.ENTITY_ID,
    "details_path": FieldKey.DETAILS,
    "webhook_url": FieldKey.WEBHOOK_URL,
}

_LITERAL_URL = re.compile(r"^https?://", re.IGNORECASE)


def normalize_field_key(key: str | FieldKey) -> FieldKey:
    """Resolve a mapping key (current or legacy spelling) to a FieldKey.

    Raises:
        RuleValidationError: If the key is not a known field.
    """
    if isinstance(key, FieldKey):
        return key
    if key in _LEGACY_KEYS:
        return _LEGACY_KEYS[key]
    try:
        return FieldKey(key)
    except ValueError:
        raise RuleValidationError(f"Unknown field key: {key!r}") from None


def is_literal_url(value: str) -> bool:
    """True if a webhookUrl mapping holds a URL rather than a payload path."""
    return bool(_LITERAL_URL.match(value.strip()))


class RuleCondition(BaseModel):
    """Optional gate evaluated against the payload before a rule executes.

    ``operator`` is kept as a plain string so that rules written with an
    operator this version does not know still load; such conditions always
    fail at evaluation time.
    """

    model_config = {"frozen": True}

    field: str
    operator: str = ConditionOperator.EQUALS.value
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: object) -> object:
        if v is None:
            return ""
        if isinstance(v, (int, float, bool)):
            return str(v).lower() if isinstance(v, bool) else str(v)
        return v

    @classmethod
    def from_raw(cls, raw: Mapping | None) -> RuleCondition | None:
        """Build a condition from stored JSON; empty or field-less means none."""
        if not raw or not raw.get("field"):
            return None
        if raw.get("enabled") is False:
            return None
        return cls(
            field=raw["field"],
            operator=raw.get("operator") or ConditionOperator.EQUALS.value,
            value=raw.get("value"),
        )

    def to_raw(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


class AutomationRule(BaseModel):
    """A validated automation rule.

    ``field_mappings`` maps FieldKey -> path string. Construction rejects keys
    that the action type does not declare.
    """

    model_config = {"frozen": True}

    id: str
    webhook_id: str
    name: str
    action_type: ActionType
    field_mappings: dict[FieldKey, str] = Field(default_factory=dict)
    condition: Optional[RuleCondition] = None
    enabled: bool = True
    sort_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("field_mappings", mode="before")
    @classmethod
    def _normalize_keys(cls, v: object) -> object:
        if v is None:
            return {}
        if isinstance(v, Mapping):
            normalized: dict[FieldKey, str] = {}
            for key, path in v.items():
                if path is None or (isinstance(path, str) and not path.strip()):
                    continue
                normalized[normalize_field_key(key)] = path
            return normalized
        return v

    @model_validator(mode="after")
    def _check_schema(self) -> AutomationRule:
        schema = ACTION_SCHEMAS[self.action_type]
        extra = [k.value for k in self.field_mappings if k not in schema.fields]
        if extra:
            raise ValueError(
                f"Field(s) {', '.join(sorted(extra))} are not valid for "
                f"action type '{self.action_type.value}'"
            )
        return self

    @property
    def schema(self) -> ActionSchema:
        return ACTION_SCHEMAS[self.action_type]

    @classmethod
    def build(cls, **data: object) -> AutomationRule:
        """Validate rule data, raising RuleValidationError instead of pydantic's error."""
        try:
            return cls(**data)
        except RuleValidationError:
            raise
        except ValidationError as exc:
            raise RuleValidationError(_summarize(exc)) from exc

    @classmethod
    def from_row(cls, row: AutomationRuleRow) -> AutomationRule:
        return cls.build(
            id=row.id,
            webhook_id=row.incoming_webhook_id,
            name=row.name,
            action_type=row.action_type,
            field_mappings=row.field_mappings or {},
            condition=RuleCondition.from_raw(row.conditions),
            enabled=row.enabled,
            sort_order=row.sort_order,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def mappings_raw(self) -> dict[str, str]:
        """Mappings keyed by plain strings, for JSON storage."""
        return {k.value: v for k, v in self.field_mappings.items()}


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or str(exc)
