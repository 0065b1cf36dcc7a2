"""CLI tests for Shopfloor -- all commands via Click's CliRunner.

Each test uses runner.isolated_filesystem() with a file-backed database,
since the CLI opens its own connection (separate from SDK setup).
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from shopfloor.cli import cli
from shopfloor.shopfloor import Shopfloor
from shopfloor.storage.schema import WorkOrderItemRow, WorkOrderRow

DB = "test.db"
ORDER = {"event": "order.paid", "product": "HMI", "qty": 2, "ref": "SO-9"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runner():
    """Create a Click test runner."""
    return CliRunner()


def _setup_shop(db_path: str) -> str:
    """Create an admin, one webhook with two rules and two work orders.

    Returns the webhook id.
    """
    with Shopfloor.open(db_path) as sf:
        sf.add_admin("Ada Admin")
        webhook, _ = sf.create_webhook("ERP orders")
        sf.create_rule(
            webhook.id,
            "Create order",
            "create_work_order",
            field_mappings={"productType": "product", "quantity": "qty", "workOrderNumber": "ref"},
            condition={"field": "event", "operator": "equals", "value": "order.paid"},
        )
        sf.create_rule(
            webhook.id,
            "Audit",
            "log_activity",
            field_mappings={"action": "event", "entityType": "kind"},
            enabled=False,
        )
        planned = WorkOrderRow(wo_number="WO-100", product_type="SENSOR", batch_size=2)
        done = WorkOrderRow(
            wo_number="WO-200", product_type="MLA", batch_size=1, status="completed",
            customer_name="Acme",
        )
        sf.sources.work_orders.save(planned)
        sf.sources.work_orders.save(done)
        sf.sources.items.save_many(
            [
                WorkOrderItemRow(
                    work_order_id=planned.id, serial_number="Q-1-001", position_in_batch=1,
                    status="completed",
                ),
                WorkOrderItemRow(
                    work_order_id=planned.id, serial_number="Q-1-002", position_in_batch=2,
                ),
            ]
        )
        sf.session.commit()
        return webhook.id


def _write_json(name: str, data: object) -> str:
    with open(name, "w") as f:
        json.dump(data, f)
    return name


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


class TestGlobalOptions:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("extract", "rules", "test", "work-orders"):
            assert name in result.output

    def test_missing_database(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["--db", "nope.db", "work-orders"])
            assert result.exit_code == 1
            assert "Database not found: nope.db" in result.output

    def test_database_from_environment(self, runner):
        with runner.isolated_filesystem():
            _setup_shop(DB)
            result = runner.invoke(cli, ["work-orders"], env={"SHOPFLOOR_DB": DB})
            assert result.exit_code == 0, result.output
            assert "WO-100" in result.output


# ---------------------------------------------------------------------------
# extract
# ---------------------------------------------------------------------------


class TestExtract:
    def test_scalar(self, runner):
        with runner.isolated_filesystem():
            _write_json("p.json", {"order": {"lines": [{"sku": "A-1"}]}})
            result = runner.invoke(cli, ["extract", "p.json", "order.lines[0].sku"])
            assert result.exit_code == 0, result.output
            assert json.loads(result.output) == "A-1"

    def test_object(self, runner):
        with runner.isolated_filesystem():
            _write_json("p.json", {"customer": {"name": "Acme", "vip": True}})
            result = runner.invoke(cli, ["extract", "p.json", "customer"])
            assert json.loads(result.output) == {"name": "Acme", "vip": True}

    def test_stdin(self, runner):
        result = runner.invoke(cli, ["extract", "-", "a.b"], input='{"a": {"b": 5}}')
        assert result.exit_code == 0
        assert json.loads(result.output) == 5

    def test_not_found(self, runner):
        with runner.isolated_filesystem():
            _write_json("p.json", {"a": 1})
            result = runner.invoke(cli, ["extract", "p.json", "a.b"])
            assert result.exit_code == 1
            assert "Nothing found at 'a.b'" in result.output

    def test_invalid_json(self, runner):
        result = runner.invoke(cli, ["extract", "-", "a"], input="{nope")
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output


# ---------------------------------------------------------------------------
# rules
# ---------------------------------------------------------------------------


class TestRules:
    def test_table(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "rules", webhook_id])
            assert result.exit_code == 0, result.output
            assert "Create order" in result.output
            assert "create_work_order" in result.output
            assert "Audit" in result.output

    def test_json(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "rules", webhook_id, "--json"])
            assert result.exit_code == 0, result.output
            data = json.loads(result.output)
            assert [r["name"] for r in data] == ["Create order", "Audit"]
            assert data[0]["condition"]["value"] == "order.paid"
            assert data[1]["enabled"] is False

    def test_unknown_webhook(self, runner):
        with runner.isolated_filesystem():
            _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "rules", "missing"])
            assert result.exit_code == 1
            assert "Error:" in result.output
            assert "Webhook endpoint not found" in result.output


# ---------------------------------------------------------------------------
# test
# ---------------------------------------------------------------------------


class TestTestCommand:
    def test_dry_run(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            _write_json("order.json", ORDER)
            result = runner.invoke(cli, ["--db", DB, "test", webhook_id, "order.json"])
            assert result.exit_code == 0, result.output
            assert "dry run" in result.output
            assert "WOULD EXECUTE" in result.output
            assert "SKIPPED" in result.output
            assert "Rule is disabled" in result.output
            assert "Rules: 2 total, 1 enabled, 1 disabled, 1 would execute" in result.output

            with Shopfloor.open(DB) as sf:
                assert sf.sources.work_orders.get_by_number("SO-9") is None

    def test_missing_field_is_flagged(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            _write_json("order.json", {"event": "order.paid", "product": "HMI"})
            result = runner.invoke(cli, ["--db", DB, "test", webhook_id, "order.json"])
            assert "quantity: missing" in result.output
            assert "Missing required field(s): quantity" in result.output

    def test_json_output(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            _write_json("order.json", ORDER)
            result = runner.invoke(
                cli, ["--db", DB, "test", webhook_id, "order.json", "--json"]
            )
            assert result.exit_code == 0, result.output
            data = json.loads(result.output)
            assert data["dryRun"] is True
            assert data["summary"]["wouldExecute"] == 1
            assert data["ruleResults"][0]["wouldExecute"] is True

    def test_live(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            _write_json("order.json", ORDER)
            result = runner.invoke(cli, ["--db", DB, "test", webhook_id, "order.json", "--live"])
            assert result.exit_code == 0, result.output
            assert "Status: 200" in result.output

            with Shopfloor.open(DB) as sf:
                wo = sf.sources.work_orders.get_by_number("SO-9")
                assert wo.batch_size == 2
                [log] = sf.webhook_logs(webhook_id)
                assert log.is_test

    def test_invalid_payload_file(self, runner):
        with runner.isolated_filesystem():
            webhook_id = _setup_shop(DB)
            with open("bad.json", "w") as f:
                f.write("{oops")
            result = runner.invoke(cli, ["--db", DB, "test", webhook_id, "bad.json"])
            assert result.exit_code == 1
            assert "Invalid JSON" in result.output


# ---------------------------------------------------------------------------
# work-orders
# ---------------------------------------------------------------------------


class TestWorkOrders:
    def test_list(self, runner):
        with runner.isolated_filesystem():
            _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "work-orders"])
            assert result.exit_code == 0, result.output
            assert "WO-100" in result.output
            assert "WO-200" in result.output
            assert "1/2 (50%)" in result.output
            assert "Acme" in result.output

    def test_status_filter(self, runner):
        with runner.isolated_filesystem():
            _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "work-orders", "-s", "completed"])
            assert result.exit_code == 0, result.output
            assert "WO-200" in result.output
            assert "WO-100" not in result.output

    def test_limit(self, runner):
        with runner.isolated_filesystem():
            _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "work-orders", "-n", "1"])
            assert result.exit_code == 0, result.output
            assert result.output.count("WO-") == 1

    def test_empty(self, runner):
        with runner.isolated_filesystem():
            Shopfloor.open(DB).close()
            result = runner.invoke(cli, ["--db", DB, "work-orders"])
            assert result.exit_code == 0, result.output
            assert "No work orders." in result.output

    def test_invalid_status(self, runner):
        with runner.isolated_filesystem():
            _setup_shop(DB)
            result = runner.invoke(cli, ["--db", DB, "work-orders", "-s", "shipped"])
            assert result.exit_code == 2
