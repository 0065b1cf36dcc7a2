"""WebhookTestHarness -- previews a webhook's rules against a sample payload.

A dry run evaluates every rule (disabled ones included, reported as
skipped) and touches nothing. A live run additionally dispatches the
would-execute rules and records a webhook log row flagged ``is_test``.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from shopfloor.automation.engine import RuleEngine
from shopfloor.exceptions import WebhookNotFoundError
from shopfloor.models.evaluation import TestReport, TestSummary
from shopfloor.storage.schema import WebhookLogRow

if TYPE_CHECKING:
    from shopfloor.automation.dispatcher import ActionDispatcher
    from shopfloor.models.evaluation import RuleEvaluationResult
    from shopfloor.storage.repositories import (
        AutomationRuleRepository,
        WebhookLogRepository,
        WebhookRepository,
    )

logger = logging.getLogger(__name__)


def summarize(results: list[RuleEvaluationResult]) -> TestSummary:
    enabled = sum(1 for r in results if r.enabled)
    return TestSummary(
        total_rules=len(results),
        enabled_rules=enabled,
        disabled_rules=len(results) - enabled,
        would_execute=sum(1 for r in results if r.would_execute),
    )


class WebhookTestHarness:
    """Runs a webhook's rules against a test payload."""

    def __init__(
        self,
        *,
        webhooks: WebhookRepository,
        rules: AutomationRuleRepository,
        logs: WebhookLogRepository,
        dispatcher: ActionDispatcher | None = None,
        engine: RuleEngine | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._rules = rules
        self._logs = logs
        self._dispatcher = dispatcher
        self._engine = engine or RuleEngine()

    def test(self, webhook_id: str, payload: Any, *, dry_run: bool = True) -> TestReport:
        """Evaluate every rule of *webhook_id* against *payload*.

        Raises:
            WebhookNotFoundError: If the webhook does not exist.
            RuntimeError: For a live run without a dispatcher.
        """
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        if not dry_run and self._dispatcher is None:
            raise RuntimeError("Live test runs need an ActionDispatcher")

        started = time.perf_counter()
        pairs = self._engine.evaluate_rows(self._rules.list_for_webhook(webhook.id), payload)
        results = [evaluation for _, evaluation in pairs]
        summary = summarize(results)

        live = None
        if not dry_run:
            live = self._dispatcher.dispatch_all(
                pairs,
                payload,
                webhook_id=webhook.id,
                secret=webhook.secret_key,
            )
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        if live is not None:
            self._logs.save(
                WebhookLogRow(
                    incoming_webhook_id=webhook.id,
                    request_body=payload,
                    response_status=live.status_code,
                    response_body=live.to_dict(),
                    executed_rules=[o.to_dict() for o in live.executed],
                    error_message="; ".join(live.errors) or None,
                    is_test=True,
                    response_time_ms=elapsed_ms,
                )
            )

        logger.info(
            "Tested webhook %s (%s): %d/%d rule(s) would execute",
            webhook.name,
            "dry run" if dry_run else "live",
            summary.would_execute,
            summary.total_rules,
        )
        return TestReport(
            webhook_id=webhook.id,
            webhook_name=webhook.name,
            test_payload=payload,
            rule_results=tuple(results),
            summary=summary,
            response_time_ms=elapsed_ms,
            dry_run=dry_run,
            live_result=live,
        )
