"""WebhookReceiver -- processes one inbound payload for an endpoint.

Pipeline: resolve endpoint key -> check enabled -> authenticate -> parse
JSON -> evaluate enabled rules in sort order -> dispatch would-execute
rules -> bump trigger stats -> write a webhook log row.

Rejections raise WebhookError subclasses carrying an HTTP-style
status_code. A processed payload returns a ProcessingReport whose
status_code is 200, or 207 when any rule failed.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Mapping

from shopfloor.automation.dispatcher import ActionDispatcher
from shopfloor.automation.engine import RuleEngine
from shopfloor.automation.security import secrets_match, verify_signature
from shopfloor.exceptions import (
    InvalidPayloadError,
    WebhookAuthError,
    WebhookDisabledError,
    WebhookNotFoundError,
)
from shopfloor.models.evaluation import ProcessingReport
from shopfloor.storage.schema import WebhookLogRow, utcnow

if TYPE_CHECKING:
    from shopfloor.storage.repositories import (
        AutomationRuleRepository,
        WebhookLogRepository,
        WebhookRepository,
    )
    from shopfloor.storage.schema import IncomingWebhookRow

logger = logging.getLogger(__name__)


def parse_body(body: Any) -> Any:
    """Decode a request body. Empty bodies decode to ``{}``.

    Raises:
        InvalidPayloadError: If a str/bytes body is not valid JSON.
    """
    if body is None:
        return {}
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidPayloadError("Invalid JSON body") from None
    if isinstance(body, str):
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except ValueError:
            raise InvalidPayloadError("Invalid JSON body") from None
    return body


class WebhookReceiver:
    """Inbound webhook endpoint handler."""

    def __init__(
        self,
        *,
        webhooks: WebhookRepository,
        rules: AutomationRuleRepository,
        logs: WebhookLogRepository,
        dispatcher: ActionDispatcher,
        engine: RuleEngine | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._rules = rules
        self._logs = logs
        self._dispatcher = dispatcher
        self._engine = engine or RuleEngine()

    def _authenticate(
        self,
        webhook: IncomingWebhookRow,
        raw_body: Any,
        secret: str | None,
        signature: str | None,
    ) -> bool:
        if secrets_match(secret, webhook.secret_key):
            return True
        if signature and isinstance(raw_body, (str, bytes, bytearray)):
            if isinstance(raw_body, bytearray):
                raw_body = bytes(raw_body)
            return verify_signature(raw_body, signature, webhook.secret_key)
        return False

    def receive(
        self,
        endpoint_key: str,
        body: Any,
        *,
        secret: str | None = None,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> ProcessingReport:
        """Process *body* for the endpoint identified by *endpoint_key*.

        Args:
            endpoint_key: Public endpoint key from the request path.
            body: Raw request body (str/bytes) or an already-decoded payload.
            secret: Value of the shared-secret header, if sent.
            signature: ``sha256=<hex>`` HMAC of the raw body, if sent.
            headers: Request headers to record in the log.

        Raises:
            WebhookNotFoundError: Unknown endpoint key (404).
            WebhookDisabledError: Endpoint disabled (403).
            WebhookAuthError: Neither secret nor signature valid (401).
            InvalidPayloadError: Body is not JSON (400).
        """
        started = time.perf_counter()
        request_headers = dict(headers or {})

        webhook = self._webhooks.get_by_endpoint_key(endpoint_key)
        if webhook is None:
            logger.info("Webhook not found: %s", endpoint_key)
            raise WebhookNotFoundError(endpoint_key)
        if not webhook.enabled:
            logger.info("Webhook disabled: %s", endpoint_key)
            raise WebhookDisabledError(endpoint_key)

        if not self._authenticate(webhook, body, secret, signature):
            logger.warning("Invalid secret for webhook: %s", endpoint_key)
            self._logs.save(
                WebhookLogRow(
                    incoming_webhook_id=webhook.id,
                    request_headers=request_headers,
                    response_status=WebhookAuthError.status_code,
                    error_message="Invalid secret key",
                )
            )
            raise WebhookAuthError("Invalid secret key")

        try:
            payload = parse_body(body)
        except InvalidPayloadError:
            logger.info("Failed to parse request body for webhook: %s", endpoint_key)
            self._logs.save(
                WebhookLogRow(
                    incoming_webhook_id=webhook.id,
                    request_headers=request_headers,
                    response_status=InvalidPayloadError.status_code,
                    error_message="Invalid JSON body",
                )
            )
            raise

        pairs = self._engine.evaluate_rows(
            self._rules.list_for_webhook(webhook.id, enabled_only=True), payload
        )
        report = self._dispatcher.dispatch_all(
            pairs,
            payload,
            webhook_id=webhook.id,
            secret=webhook.secret_key,
        )
        logger.info(
            "Webhook %s: executed %d rule(s), %d error(s)",
            endpoint_key,
            len(report.executed),
            len(report.errors),
        )

        self._webhooks.record_trigger(webhook, utcnow())
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        self._logs.save(
            WebhookLogRow(
                incoming_webhook_id=webhook.id,
                request_body=payload,
                request_headers=request_headers,
                response_status=report.status_code,
                response_body=report.to_dict(),
                executed_rules=[o.to_dict() for o in report.executed],
                error_message="; ".join(report.errors) or None,
                is_test=False,
                response_time_ms=elapsed_ms,
            )
        )
        return report
