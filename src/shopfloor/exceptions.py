"""Shopfloor exception hierarchy.

All Shopfloor-specific exceptions inherit from ShopfloorError.

Missing required fields and malformed field-mapping paths are deliberately
absent here: both are ordinary outcomes of rule evaluation and are reported
as data on the evaluation result.
"""

from __future__ import annotations


class ShopfloorError(Exception):
    """Base exception for all Shopfloor errors."""


# ---------------------------------------------------------------------------
# Query layer
# ---------------------------------------------------------------------------


class TransientFetchError(ShopfloorError):
    """A fetch failed in a way that is worth retrying."""


class QueryTimeoutError(TransientFetchError):
    """Raised when a single fetch attempt exceeds its timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Query timeout after {timeout:g}s")


class AbortedError(ShopfloorError):
    """Raised by a query function whose backing resources were torn down.

    ListSources raises it once closed. It is not retried, never stored in a
    QueryState and never reported to callers: the chain just stops loading.
    """

    def __init__(self, reason: str = "superseded") -> None:
        self.reason = reason
        super().__init__(f"Query aborted: {reason}")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleValidationError(ShopfloorError):
    """Raised when an automation rule definition is invalid."""


class RuleNotFoundError(ShopfloorError):
    """Raised when a rule id lookup fails."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Automation rule not found: {rule_id}")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class ActionDispatchError(ShopfloorError):
    """Base for failures while executing a rule's action.

    Recorded on the per-rule outcome; never aborts sibling rules.
    """


class WorkOrderNotFoundError(ActionDispatchError):
    """Raised when a work order business number does not exist."""

    def __init__(self, wo_number: str) -> None:
        self.wo_number = wo_number
        super().__init__(f"Work order not found: {wo_number}")


class ItemNotFoundError(ActionDispatchError):
    """Raised when a work order item serial number does not exist."""

    def __init__(self, serial_number: str) -> None:
        self.serial_number = serial_number
        super().__init__(f"Work order item not found: {serial_number}")


class NoAdminUserError(ActionDispatchError):
    """Raised when a work order must be attributed but no admin exists."""

    def __init__(self) -> None:
        super().__init__("No admin user found for work order creation")


class InvalidFieldValueError(ActionDispatchError):
    """Raised when an extracted value cannot be used for its field."""

    def __init__(self, field: str, value: object, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for '{field}' ({value!r}): {reason}")


class UnsafeUrlError(ActionDispatchError):
    """Raised when an outbound webhook URL is rejected."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Refusing to call {url!r}: {reason}")


class OutgoingWebhookError(ActionDispatchError):
    """Raised when forwarding to an outbound webhook fails."""

    def __init__(self, url: str, message: str, status_code: int | None = None) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(f"Failed to call webhook {url}: {message}")


# ---------------------------------------------------------------------------
# Webhook receiver
# ---------------------------------------------------------------------------


class WebhookError(ShopfloorError):
    """Base for inbound webhook rejections. Carries an HTTP-style status."""

    status_code: int = 500


class WebhookNotFoundError(WebhookError):
    """Raised when an endpoint key or webhook id is unknown."""

    status_code = 404

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Webhook endpoint not found: {key}")


class WebhookDisabledError(WebhookError):
    """Raised when a disabled endpoint receives a payload."""

    status_code = 403

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Webhook endpoint is disabled: {key}")


class WebhookAuthError(WebhookError):
    """Raised when the shared secret or body signature does not match."""

    status_code = 401


class InvalidPayloadError(WebhookError):
    """Raised when the request body is not valid JSON."""

    status_code = 400
