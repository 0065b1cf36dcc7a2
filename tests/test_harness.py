"""Tests for WebhookTestHarness dry and live runs."""

from __future__ import annotations

import pytest

from shopfloor.automation.engine import RuleEngine
from shopfloor.automation.harness import WebhookTestHarness, summarize
from shopfloor.exceptions import WebhookNotFoundError
from shopfloor.models.evaluation import RuleStage
from shopfloor.models.rules import AutomationRule
from shopfloor.storage.schema import (
    AutomationRuleRow,
    IncomingWebhookRow,
    WorkOrderItemRow,
    WorkOrderRow,
)

PAYLOAD = {"event": "build.done", "serial": "Q-1-001", "step": 3, "line": "L2"}


@pytest.fixture
def hook(sf):
    sf.add_admin("Ada Admin")
    webhook, _ = sf.create_webhook("MES events")
    sf.create_rule(
        webhook.id,
        "Advance item",
        "update_item_status",
        field_mappings={"serialNumber": "serial", "currentStep": "step"},
        condition={"field": "event", "operator": "contains", "value": "build"},
    )
    sf.create_rule(
        webhook.id,
        "Audit",
        "log_activity",
        field_mappings={"action": "event", "entityType": "line"},
    )
    sf.create_rule(
        webhook.id,
        "Only on rework",
        "log_activity",
        field_mappings={"action": "event", "entityType": "line"},
        condition={"field": "event", "operator": "equals", "value": "rework"},
    )
    sf.create_rule(
        webhook.id,
        "Switched off",
        "log_activity",
        field_mappings={"action": "event", "entityType": "line"},
        enabled=False,
    )
    return webhook


def add_broken_rule(sf, webhook_id: str) -> AutomationRuleRow:
    """Store a rule that fails validation, as an older release could have written."""
    row = AutomationRuleRow(
        incoming_webhook_id=webhook_id,
        name="Broken",
        action_type="update_item_status",
        field_mappings={"serial_number": "serial", "notes": "line"},
        sort_order=1,
    )
    sf.session.add(row)
    sf.session.commit()
    return row

class TestDryRun:
    def test_report_contents(self, sf, hook):
        report = sf.test_webhook(hook.id, PAYLOAD)
        assert report.dry_run
        assert report.success
        assert report.webhook_name == "MES events"
        assert report.test_payload == PAYLOAD
        assert [r.rule_name for r in report.rule_results] == [
            "Advance item",
            "Audit",
            "Only on rework",
            "Switched off",
        ]
        assert [r.would_execute for r in report.rule_results] == [True, True, False, False]
        assert report.rule_results[3].skip_reason == "Rule is disabled"
        assert report.live_result is None
        assert report.response_time_ms >= 0

    def test_summary(self, sf, hook):
        summary = sf.test_webhook(hook.id, PAYLOAD).summary
        assert summary.total_rules == 4
        assert summary.enabled_rules == 3
        assert summary.disabled_rules == 1
        assert summary.would_execute == 2

    def test_dry_run_writes_nothing(self, sf, hook):
        sf.test_webhook(hook.id, PAYLOAD)
        assert sf.webhook_logs(hook.id) == []
        assert sf.get_webhook(hook.id).trigger_count == 0

    def test_missing_required_reported(self, sf, hook):
        report = sf.test_webhook(hook.id, {"event": "build.done"})
        advance = report.rule_results[0]
        assert not advance.would_execute
        assert advance.missing_required == ("serialNumber",)
        assert report.summary.would_execute == 0

    def test_to_dict(self, sf, hook):
        data = sf.test_webhook(hook.id, PAYLOAD).to_dict()
        assert data["webhook"] == {"id": hook.id, "name": "MES events"}
        assert data["summary"] == {
            "totalRules": 4,
            "enabledRules": 3,
            "disabledRules": 1,
            "wouldExecute": 2,
        }
        assert data["dryRun"] is True
        assert data["liveResult"] is None
        assert len(data["ruleResults"]) == 4

    def test_unknown_webhook(self, sf):
        with pytest.raises(WebhookNotFoundError):
            sf.test_webhook("missing", PAYLOAD)

    def test_webhook_without_rules(self, sf):
        webhook, _ = sf.create_webhook("Empty")
        report = sf.test_webhook(webhook.id, {})
        assert report.rule_results == ()
        assert report.summary.total_rules == 0

    def test_invalid_stored_rule_is_skipped(self, sf, hook):
        add_broken_rule(sf, hook.id)
        report = sf.test_webhook(hook.id, PAYLOAD)

        by_name = {r.rule_name: r for r in report.rule_results}
        assert len(by_name) == 5
        broken = by_name["Broken"]
        assert not broken.would_execute
        assert broken.rule_error is not None
        assert "notes are not valid for action type 'update_item_status'" in broken.skip_reason
        assert broken.path == (RuleStage.PENDING, RuleStage.SKIPPED)
        assert broken.to_dict()["actionType"] == "update_item_status"
        assert by_name["Advance item"].would_execute
        assert by_name["Audit"].would_execute
        assert report.summary.total_rules == 5
        assert report.summary.enabled_rules == 4
        assert report.summary.would_execute == 2


@pytest.fixture
def seeded_item(sf):
    """WO-1 with item Q-1-001, committed through the facade's repositories."""
    wo = WorkOrderRow(wo_number="WO-1", product_type="SENSOR", batch_size=1)
    sf.sources.work_orders.save(wo)
    sf.sources.items.save_many(
        [WorkOrderItemRow(work_order_id=wo.id, serial_number="Q-1-001", position_in_batch=1)]
    )
    sf.session.commit()
    return wo


class TestLiveRun:
    def test_dispatches_and_logs_as_test(self, sf, hook, seeded_item):
        report = sf.test_webhook(hook.id, PAYLOAD, dry_run=False)
        assert not report.dry_run
        live = report.live_result
        assert [o.rule_name for o in live.executed] == ["Advance item", "Audit"]
        assert live.status_code == 200

        item = sf.sources.items.get_by_serial("Q-1-001")
        assert item.current_step == 3

        [log] = sf.webhook_logs(hook.id)
        assert log.is_test is True
        assert log.response_status == 200
        assert sf.get_webhook(hook.id).trigger_count == 0

        data = report.to_dict()
        assert data["liveResult"]["status"] == 200
        assert len(data["liveResult"]["executed"]) == 2

    def test_live_failure_reported(self, sf, hook):
        report = sf.test_webhook(hook.id, PAYLOAD, dry_run=False)
        live = report.live_result
        assert live.status_code == 207
        assert live.errors == ["Rule Advance item: Work order item not found: Q-1-001"]
        [log] = sf.webhook_logs(hook.id)
        assert log.error_message == live.errors[0]

    def test_invalid_stored_rule_fails_alone(self, sf, hook, seeded_item):
        add_broken_rule(sf, hook.id)
        live = sf.test_webhook(hook.id, PAYLOAD, dry_run=False).live_result
        assert live.status_code == 207
        assert [o.rule_name for o in live.executed] == ["Advance item", "Audit"]
        [error] = live.errors
        assert error.startswith("Rule Broken: Invalid rule: ")
        assert sf.sources.items.get_by_serial("Q-1-001").current_step == 3

    def test_live_needs_dispatcher(self, webhook_repo, rule_repo, log_repo, session):
        row = IncomingWebhookRow(name="w", endpoint_key="k" * 32, secret_key="s" * 64)
        webhook_repo.save(row)
        harness = WebhookTestHarness(webhooks=webhook_repo, rules=rule_repo, logs=log_repo)
        assert harness.test(row.id, {}).dry_run
        with pytest.raises(RuntimeError):
            harness.test(row.id, {}, dry_run=False)


def test_summarize_counts():
    rules = [
        AutomationRule.build(
            id=str(i),
            webhook_id="w",
            name=f"r{i}",
            action_type="log_activity",
            field_mappings={"action": "a", "entityType": "t"},
            enabled=i != 0,
        )
        for i in range(3)
    ]
    results = RuleEngine().evaluate_all(rules, {"a": "x", "t": "y"})
    summary = summarize(results)
    assert (summary.total_rules, summary.enabled_rules, summary.disabled_rules) == (3, 2, 1)
    assert summary.would_execute == 2
