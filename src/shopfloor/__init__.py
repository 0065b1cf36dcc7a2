"""Shopfloor: resilient work order lists and webhook automation rules.

Cached, self-healing list queries for work orders and production reports,
plus a rule engine that turns inbound webhook payloads into shop floor
actions.
"""

from shopfloor._version import __version__

# Core entry point
from shopfloor.shopfloor import Shopfloor

# Configuration
from shopfloor.models.config import DispatchConfig, ListConfig, QueryConfig, ShopfloorConfig

# Domain models
from shopfloor.models.entities import (
    IncomingWebhook,
    ProductBreakdown,
    ProductType,
    ProductionReportItem,
    WorkOrder,
    WorkOrderListItem,
    WorkOrderStatus,
)
from shopfloor.models.rules import (
    ACTION_SCHEMAS,
    ActionSchema,
    ActionType,
    AutomationRule,
    ConditionOperator,
    FieldKey,
    RuleCondition,
)
from shopfloor.models.evaluation import (
    ConditionResult,
    DispatchOutcome,
    ExtractionResult,
    ProcessingReport,
    RuleEvaluationResult,
    RuleStage,
    TestReport,
    TestSummary,
)

# Query layer
from shopfloor.query import (
    EntityCache,
    PaginatedWorkOrderQuery,
    ProductionReportListQuery,
    QueryPhase,
    QueryState,
    ReportFilters,
    ResilientQuery,
    WorkOrderFilters,
    WorkOrderListQuery,
    cache_key,
)

# Automation
from shopfloor.automation import (
    ActionDispatcher,
    RuleEngine,
    WebhookReceiver,
    WebhookTestHarness,
    extract,
    evaluate_condition,
)

# Exceptions
from shopfloor.exceptions import (
    AbortedError,
    ActionDispatchError,
    InvalidFieldValueError,
    InvalidPayloadError,
    ItemNotFoundError,
    NoAdminUserError,
    OutgoingWebhookError,
    QueryTimeoutError,
    RuleNotFoundError,
    RuleValidationError,
    ShopfloorError,
    TransientFetchError,
    UnsafeUrlError,
    WebhookAuthError,
    WebhookDisabledError,
    WebhookError,
    WebhookNotFoundError,
    WorkOrderNotFoundError,
)

__all__ = [
    "__version__",
    # Core
    "Shopfloor",
    # Config
    "ShopfloorConfig",
    "QueryConfig",
    "ListConfig",
    "DispatchConfig",
    # Domain
    "WorkOrderStatus",
    "ProductType",
    "ProductBreakdown",
    "WorkOrder",
    "WorkOrderListItem",
    "ProductionReportItem",
    "IncomingWebhook",
    "ActionType",
    "ConditionOperator",
    "FieldKey",
    "ActionSchema",
    "ACTION_SCHEMAS",
    "RuleCondition",
    "AutomationRule",
    "RuleStage",
    "ExtractionResult",
    "ConditionResult",
    "RuleEvaluationResult",
    "DispatchOutcome",
    "ProcessingReport",
    "TestSummary",
    "TestReport",
    # Query
    "QueryPhase",
    "QueryState",
    "ResilientQuery",
    "EntityCache",
    "cache_key",
    "WorkOrderFilters",
    "ReportFilters",
    "WorkOrderListQuery",
    "ProductionReportListQuery",
    "PaginatedWorkOrderQuery",
    # Automation
    "extract",
    "evaluate_condition",
    "RuleEngine",
    "ActionDispatcher",
    "WebhookReceiver",
    "WebhookTestHarness",
    # Exceptions
    "ShopfloorError",
    "TransientFetchError",
    "QueryTimeoutError",
    "AbortedError",
    "RuleValidationError",
    "RuleNotFoundError",
    "ActionDispatchError",
    "WorkOrderNotFoundError",
    "ItemNotFoundError",
    "NoAdminUserError",
    "InvalidFieldValueError",
    "UnsafeUrlError",
    "OutgoingWebhookError",
    "WebhookError",
    "WebhookNotFoundError",
    "WebhookDisabledError",
    "WebhookAuthError",
    "InvalidPayloadError",
]
