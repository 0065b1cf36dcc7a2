"""RuleEngine -- evaluates automation rules against one inbound payload.

Evaluation is pure: it reads the rule and the payload and returns a
RuleEvaluationResult. Rules share no state, so a payload's rules may be
evaluated in any order with identical results; evaluate_all() still
returns them in execution order (ascending sort_order).

Per-rule lifecycle:
    PENDING -> CONDITION_CHECKED -> FIELDS_EXTRACTED -> WOULD_EXECUTE | SKIPPED

Disabled rules, and stored rules that fail validation, go straight from
PENDING to SKIPPED.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional

from shopfloor.automation.conditions import evaluate_condition
from shopfloor.automation.extractor import extract
from shopfloor.exceptions import RuleValidationError
from shopfloor.models.evaluation import (
    ConditionResult,
    ExtractionResult,
    RuleEvaluationResult,
    RuleStage,
)
from shopfloor.models.rules import ActionType, AutomationRule, FieldKey, is_literal_url

if TYPE_CHECKING:
    from shopfloor.storage.schema import AutomationRuleRow

logger = logging.getLogger(__name__)


def execution_order(rules: Iterable[AutomationRule]) -> list[AutomationRule]:
    """Rules sorted by sort_order, then creation time, then id."""
    return sorted(rules, key=lambda r: (r.sort_order, r.created_at or datetime.min, r.id))


class RuleEngine:
    """Stateless evaluator for AutomationRule objects."""

    def check_condition(self, rule: AutomationRule, payload: Any) -> ConditionResult | None:
        """Run the rule's condition, or return None if it has none."""
        condition = rule.condition
        if condition is None:
            return None
        extracted = extract(payload, condition.field)
        return evaluate_condition(
            extracted.value if extracted.found else None,
            condition.operator,
            condition.value,
            field=condition.field,
        )

    def extract_fields(self, rule: AutomationRule, payload: Any) -> tuple[ExtractionResult, ...]:
        """One ExtractionResult per field of the rule's action schema.

        Fields without a mapping are reported as not found. A webhookUrl
        mapping holding an absolute URL is taken literally.
        """
        schema = rule.schema
        results = []
        for key in schema.fields:
            path = rule.field_mappings.get(key)
            required = schema.is_required(key)
            if path is None:
                results.append(ExtractionResult(key.value, None, required=required))
                continue
            if key is FieldKey.WEBHOOK_URL and is_literal_url(path):
                results.append(
                    ExtractionResult(key.value, path, value=path.strip(), found=True, required=required)
                )
                continue
            extracted = extract(payload, path)
            results.append(
                ExtractionResult(
                    key.value,
                    path,
                    value=extracted.value,
                    found=extracted.found,
                    required=required,
                )
            )
        return tuple(results)

    def evaluate(self, rule: AutomationRule, payload: Any) -> RuleEvaluationResult:
        """Decide whether *rule* would execute for *payload*.

        A disabled rule is skipped without extraction. Otherwise fields are
        always extracted, even after a failed condition, so previews can show
        them; execution additionally requires every required field found.
        The stages walked are recorded on the result's ``path``.
        """
        stage = RuleStage.PENDING
        if not rule.enabled:
            return RuleEvaluationResult(
                rule_id=rule.id,
                rule_name=rule.name,
                action_type=rule.action_type,
                stage=stage.advance(RuleStage.SKIPPED),
                skip_reason="Rule is disabled",
                enabled=False,
                path=(stage, RuleStage.SKIPPED),
            )

        path = [stage]
        condition_result = self.check_condition(rule, payload)
        stage = stage.advance(RuleStage.CONDITION_CHECKED)
        path.append(stage)
        extracted = self.extract_fields(rule, payload)
        stage = stage.advance(RuleStage.FIELDS_EXTRACTED)
        path.append(stage)

        missing = tuple(e.field_key for e in extracted if e.required and not e.found)
        condition_ok = condition_result is None or condition_result.passed
        would_execute = condition_ok and not missing

        skip_reason = None
        if not condition_ok:
            skip_reason = f"Condition failed: {condition_result.reason}"
        elif missing:
            skip_reason = f"Missing required field(s): {', '.join(missing)}"
        stage = stage.advance(RuleStage.WOULD_EXECUTE if would_execute else RuleStage.SKIPPED)
        path.append(stage)

        logger.debug(
            "Rule %r (%s): %s%s",
            rule.name,
            rule.action_type.value,
            stage.value,
            f" ({skip_reason})" if skip_reason else "",
        )
        return RuleEvaluationResult(
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=rule.action_type,
            extracted_values=extracted,
            condition_result=condition_result,
            missing_required=missing,
            would_execute=would_execute,
            stage=stage,
            skip_reason=skip_reason,
            path=tuple(path),
        )

    def evaluate_all(
        self, rules: Iterable[AutomationRule], payload: Any
    ) -> list[RuleEvaluationResult]:
        return [self.evaluate(rule, payload) for rule in execution_order(rules)]

    def evaluate_rows(
        self, rows: Iterable[AutomationRuleRow], payload: Any
    ) -> list[tuple[Optional[AutomationRule], RuleEvaluationResult]]:
        """Validate and evaluate stored rules in execution order.

        A row that no longer validates does not stop the others: it pairs
        None with a skipped result whose ``rule_error`` carries the message.
        """
        ordered = sorted(rows, key=lambda r: (r.sort_order, r.created_at or datetime.min, r.id))
        pairs: list[tuple[Optional[AutomationRule], RuleEvaluationResult]] = []
        for row in ordered:
            try:
                rule = AutomationRule.from_row(row)
            except (RuleValidationError, ValueError) as exc:
                logger.warning("Stored rule %r (%s) is invalid: %s", row.name, row.id, exc)
                pairs.append((None, _invalid_result(row, str(exc))))
                continue
            pairs.append((rule, self.evaluate(rule, payload)))
        return pairs


def _invalid_result(row: AutomationRuleRow, error: str) -> RuleEvaluationResult:
    try:
        action_type: ActionType | str = ActionType(row.action_type)
    except ValueError:
        action_type = row.action_type
    return RuleEvaluationResult(
        rule_id=row.id,
        rule_name=row.name,
        action_type=action_type,
        stage=RuleStage.SKIPPED,
        skip_reason="Rule is disabled" if not row.enabled else f"Invalid rule: {error}",
        enabled=bool(row.enabled),
        rule_error=error,
        path=(RuleStage.PENDING, RuleStage.SKIPPED),
    )
