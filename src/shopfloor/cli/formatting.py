"""Rich formatting helpers for the Shopfloor CLI.

Each helper renders one kind of result (rules, test reports, work orders)
onto a Console. Output piped to a file carries no colour codes.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from shopfloor.models.entities import WorkOrderListItem
    from shopfloor.models.evaluation import ProcessingReport, TestReport
    from shopfloor.models.rules import AutomationRule


def get_console() -> Console:
    """Console for stdout; colour is dropped automatically when not a TTY."""
    return Console(stderr=False)


def format_json(data: Any, console: Console) -> None:
    """Print *data* as plain indented JSON (no markup, no highlighting)."""
    console.print(
        json.dumps(data, indent=2, default=str), markup=False, highlight=False, soft_wrap=True
    )


def format_rules(rules: list[AutomationRule], console: Console) -> None:
    """Display a webhook's rules in execution order."""
    if not rules:
        console.print("[dim]No rules.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name")
    table.add_column("Action", style="cyan")
    table.add_column("Condition")
    table.add_column("Enabled")
    table.add_column("Id", style="yellow")

    for rule in rules:
        cond = rule.condition
        cond_str = f"{cond.field} {cond.operator} {cond.value!r}" if cond else "-"
        table.add_row(
            str(rule.sort_order),
            escape(rule.name),
            rule.action_type.value,
            escape(cond_str),
            "[green]yes[/green]" if rule.enabled else "[red]no[/red]",
            rule.id[:8],
        )

    console.print(table)


def format_test_report(report: TestReport, console: Console) -> None:
    """Display per-rule evaluation results and the summary of a test run."""
    mode = "dry run" if report.dry_run else "live"
    console.print(
        f"Webhook [bold]{escape(report.webhook_name)}[/bold] ({mode}, "
        f"{report.response_time_ms:.1f} ms)"
    )

    for result in report.rule_results:
        console.print()
        if result.would_execute:
            marker = "[green]WOULD EXECUTE[/green]"
        else:
            marker = "[yellow]SKIPPED[/yellow]"
        console.print(f"{marker} {escape(result.rule_name)} [dim]({result.action_name})[/dim]")
        if result.condition_result is not None:
            ok = "[green]pass[/green]" if result.condition_result.passed else "[red]fail[/red]"
            console.print(f"  Condition: {ok} {escape(result.condition_result.reason)}")
        for extracted in result.extracted_values:
            if extracted.found:
                value = escape(json.dumps(extracted.value, default=str))
            elif extracted.required:
                value = "[red]missing[/red]"
            else:
                value = "[dim]-[/dim]"
            console.print(f"  {extracted.field_key}: {value}")
        if result.skip_reason:
            console.print(f"  Reason: {escape(result.skip_reason)}")

    s = report.summary
    console.print()
    console.print(
        f"Rules: {s.total_rules} total, {s.enabled_rules} enabled, "
        f"{s.disabled_rules} disabled, [bold]{s.would_execute}[/bold] would execute"
    )
    if report.live_result is not None:
        format_processing_report(report.live_result, console)


def format_processing_report(report: ProcessingReport, console: Console) -> None:
    """Display dispatch outcomes of a live run."""
    console.print(f"Status: {report.status_code}")
    for outcome in report.outcomes:
        if outcome.success:
            console.print(f"  [green]ok[/green] {escape(outcome.rule_name)}")
        else:
            console.print(f"  [red]failed[/red] {escape(outcome.rule_name)}: {escape(outcome.error or '')}")


def format_work_orders(items: list[WorkOrderListItem], console: Console) -> None:
    """Display enriched work orders in a compact table."""
    if not items:
        console.print("[dim]No work orders.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Number", style="yellow")
    table.add_column("Product", style="cyan")
    table.add_column("Status")
    table.add_column("Customer")
    table.add_column("Progress", justify="right", style="green")
    table.add_column("Created", style="dim")

    for wo in items:
        table.add_row(
            escape(wo.wo_number),
            wo.product_type.label,
            wo.status.value,
            escape(wo.customer_name or ""),
            f"{wo.completed_items}/{wo.total_items} ({wo.progress_percent}%)",
            wo.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)


def format_warning(message: str, console: Console) -> None:
    console.print(f"[yellow]Warning:[/yellow] {escape(message)}", highlight=False)
