"""Typed entities mapped from storage rows.

The list queries hand these to consumers instead of raw ORM rows. Status and
product-type columns are validated against their enums here, at the read
boundary.
"""

from __future__ import annotations

import enum
from collections import Counter
from datetime import date, datetime
from typing import TYPE_CHECKING, Iterable, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from shopfloor.storage.schema import (
        IncomingWebhookRow,
        ProfileRow,
        WorkOrderItemRow,
        WorkOrderRow,
    )


class WorkOrderStatus(str, enum.Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class ProductType(str, enum.Enum):
    SDM_ECO = "SDM_ECO"
    SENSOR = "SENSOR"
    MLA = "MLA"
    HMI = "HMI"
    TRANSMITTER = "TRANSMITTER"

    def __str__(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return _PRODUCT_LABELS[self]

    @property
    def serial_prefix(self) -> str:
        """Prefix used for newly generated item serial numbers."""
        return _SERIAL_PREFIXES[self]


_PRODUCT_LABELS: dict[ProductType, str] = {
    ProductType.SDM_ECO: "SDM-ECO",
    ProductType.SENSOR: "Sensor",
    ProductType.MLA: "MLA",
    ProductType.HMI: "HMI",
    ProductType.TRANSMITTER: "Transmitter",
}

_SERIAL_PREFIXES: dict[ProductType, str] = {
    ProductType.SENSOR: "Q",
    ProductType.MLA: "W",
    ProductType.HMI: "X",
    ProductType.TRANSMITTER: "T",
    ProductType.SDM_ECO: "S",
}

_PREFIX_TO_TYPE: dict[str, ProductType] = {
    "Q": ProductType.SENSOR,
    "W": ProductType.MLA,
    "X": ProductType.HMI,
    "T": ProductType.TRANSMITTER,
    "SDM": ProductType.SDM_ECO,
    "S": ProductType.SDM_ECO,
}


def product_type_from_serial(serial_number: str) -> ProductType | None:
    """Product type encoded in the part of a serial before the first ``-``."""
    return _PREFIX_TO_TYPE.get(serial_number.split("-", 1)[0])


class ProductBreakdown(BaseModel):
    model_config = {"frozen": True}

    type: ProductType
    label: str
    count: int


def product_breakdown(serial_numbers: Iterable[str]) -> list[ProductBreakdown]:
    """Count items per product type, in order of first appearance.

    Serials with an unknown prefix are ignored.
    """
    counts: Counter[ProductType] = Counter()
    for serial in serial_numbers:
        ptype = product_type_from_serial(serial)
        if ptype is not None:
            counts[ptype] += 1
    return [
        ProductBreakdown(type=ptype, label=ptype.label, count=count)
        for ptype, count in counts.items()
    ]


class Profile(BaseModel):
    model_config = {"frozen": True}

    full_name: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: ProfileRow) -> Profile:
        return cls(full_name=row.full_name, avatar_url=row.avatar_url)


class AssignedOperator(BaseModel):
    model_config = {"frozen": True}

    id: str
    full_name: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: ProfileRow) -> AssignedOperator:
        return cls(id=row.id, full_name=row.full_name, avatar_url=row.avatar_url)


class WorkOrderItem(BaseModel):
    model_config = {"frozen": True}

    id: str
    work_order_id: str
    serial_number: str
    position_in_batch: int
    current_step: int = 1
    status: str = WorkOrderStatus.PLANNED.value

    @classmethod
    def from_row(cls, row: WorkOrderItemRow) -> WorkOrderItem:
        return cls(
            id=row.id,
            work_order_id=row.work_order_id,
            serial_number=row.serial_number,
            position_in_batch=row.position_in_batch,
            current_step=row.current_step,
            status=row.status,
        )


class WorkOrder(BaseModel):
    """Core work order columns shared by every list projection."""

    model_config = {"frozen": True}

    id: str
    wo_number: str
    product_type: ProductType
    batch_size: int
    status: WorkOrderStatus
    created_at: datetime
    customer_name: Optional[str] = None

    @classmethod
    def _row_fields(cls, row: WorkOrderRow) -> dict:
        return {
            "id": row.id,
            "wo_number": row.wo_number,
            "product_type": row.product_type,
            "batch_size": row.batch_size,
            "status": row.status,
            "created_at": row.created_at,
            "customer_name": row.customer_name,
        }

    @classmethod
    def from_row(cls, row: WorkOrderRow) -> WorkOrder:
        return cls(**cls._row_fields(row))


class WorkOrderListItem(WorkOrder):
    """A work order enriched for the operational list view."""

    start_date: Optional[date] = None
    shipping_date: Optional[date] = None
    external_order_number: Optional[str] = None
    order_value: Optional[float] = None
    cancellation_reason: Optional[str] = None
    creator: Optional[Profile] = None
    product_breakdown: list[ProductBreakdown] = Field(default_factory=list)
    progress_percent: int = 0
    completed_items: int = 0
    total_items: int = 0
    assigned_operators: list[AssignedOperator] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        row: WorkOrderRow,
        *,
        items: list[WorkOrderItemRow],
        creator: ProfileRow | None = None,
        operators: list[AssignedOperator] | None = None,
    ) -> WorkOrderListItem:
        completed = sum(1 for item in items if item.status == WorkOrderStatus.COMPLETED.value)
        total = len(items) or row.batch_size
        percent = round(completed / total * 100) if total > 0 else 0
        return cls(
            **cls._row_fields(row),
            start_date=row.start_date,
            shipping_date=row.shipping_date,
            external_order_number=row.external_order_number,
            order_value=row.order_value,
            cancellation_reason=row.cancellation_reason,
            creator=Profile.from_row(creator) if creator is not None else None,
            product_breakdown=product_breakdown(item.serial_number for item in items),
            progress_percent=percent,
            completed_items=completed,
            total_items=total,
            assigned_operators=operators or [],
        )


class ProductionReportItem(WorkOrder):
    """A work order enriched for the historical reports view."""

    completed_at: Optional[datetime] = None
    product_breakdown: list[ProductBreakdown] = Field(default_factory=list)

    @classmethod
    def build(cls, row: WorkOrderRow, *, items: list[WorkOrderItemRow]) -> ProductionReportItem:
        return cls(
            **cls._row_fields(row),
            completed_at=row.completed_at,
            product_breakdown=product_breakdown(item.serial_number for item in items),
        )


class IncomingWebhook(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str
    description: Optional[str] = None
    endpoint_key: str
    enabled: bool = True
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: IncomingWebhookRow) -> IncomingWebhook:
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            endpoint_key=row.endpoint_key,
            enabled=row.enabled,
            trigger_count=row.trigger_count,
            last_triggered_at=row.last_triggered_at,
            created_at=row.created_at,
        )
