"""Automation package -- webhook-driven rule evaluation and dispatch.

Provides payload path extraction, condition checks, the RuleEngine, the
ActionDispatcher with its outbound webhook client, the inbound
WebhookReceiver and the dry-run WebhookTestHarness.
"""

from shopfloor.automation.extractor import NOT_FOUND, Extraction, extract, extract_value
from shopfloor.automation.conditions import coerce_text, evaluate_condition
from shopfloor.automation.engine import RuleEngine, execution_order
from shopfloor.automation.outgoing import Delivery, OutgoingWebhookClient
from shopfloor.automation.dispatcher import ActionDispatcher
from shopfloor.automation.receiver import WebhookReceiver, parse_body
from shopfloor.automation.harness import WebhookTestHarness
from shopfloor.automation.security import (
    generate_endpoint_key,
    generate_secret,
    mask_secret,
    sign_payload,
    validate_webhook_url,
    verify_signature,
)

__all__ = [
    "Extraction",
    "NOT_FOUND",
    "extract",
    "extract_value",
    "coerce_text",
    "evaluate_condition",
    "RuleEngine",
    "execution_order",
    "Delivery",
    "OutgoingWebhookClient",
    "ActionDispatcher",
    "WebhookReceiver",
    "parse_body",
    "WebhookTestHarness",
    "generate_endpoint_key",
    "generate_secret",
    "mask_secret",
    "sign_payload",
    "validate_webhook_url",
    "verify_signature",
]
