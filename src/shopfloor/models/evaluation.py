"""Result models for the rule evaluation pipeline.

All of these are ephemeral: computed per (rule, payload) pair or per
payload pass and never persisted as-is. They are frozen so a result cannot
change after evaluation completes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from shopfloor.models.rules import ActionType


class RuleStage(str, enum.Enum):
    """Per-invocation lifecycle of one rule.

    PENDING -> CONDITION_CHECKED -> FIELDS_EXTRACTED -> WOULD_EXECUTE | SKIPPED

    A disabled or invalid rule goes straight from PENDING to SKIPPED.
    """

    PENDING = "pending"
    CONDITION_CHECKED = "condition_checked"
    FIELDS_EXTRACTED = "fields_extracted"
    WOULD_EXECUTE = "would_execute"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (RuleStage.WOULD_EXECUTE, RuleStage.SKIPPED)

    def advance(self, target: RuleStage) -> RuleStage:
        """Return *target*, or raise ValueError if it does not follow this stage."""
        if target not in _TRANSITIONS[self]:
            raise ValueError(f"Cannot move a rule from {self.value} to {target.value}")
        return target


_TRANSITIONS: dict[RuleStage, frozenset[RuleStage]] = {
    RuleStage.PENDING: frozenset({RuleStage.CONDITION_CHECKED, RuleStage.SKIPPED}),
    RuleStage.CONDITION_CHECKED: frozenset({RuleStage.FIELDS_EXTRACTED}),
    RuleStage.FIELDS_EXTRACTED: frozenset({RuleStage.WOULD_EXECUTE, RuleStage.SKIPPED}),
    RuleStage.WOULD_EXECUTE: frozenset(),
    RuleStage.SKIPPED: frozenset(),
}


@dataclass(frozen=True)
class ExtractionResult:
    """Value located (or not) for one field of a rule."""

    field_key: str
    path: Optional[str]
    value: Any = None
    found: bool = False
    required: bool = False

    def to_dict(self) -> dict:
        return {
            "fieldKey": self.field_key,
            "path": self.path,
            "value": self.value,
            "found": self.found,
            "required": self.required,
        }


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of a rule condition check."""

    passed: bool
    reason: str

    def to_dict(self) -> dict:
        return {"passed": self.passed, "reason": self.reason}


@dataclass(frozen=True)
class RuleEvaluationResult:
    """Output of one RuleEngine.evaluate() call."""

    rule_id: str
    rule_name: str
    action_type: ActionType | str
    extracted_values: tuple[ExtractionResult, ...] = ()
    condition_result: Optional[ConditionResult] = None
    missing_required: tuple[str, ...] = ()
    would_execute: bool = False
    stage: RuleStage = RuleStage.SKIPPED
    skip_reason: Optional[str] = None
    enabled: bool = True
    # Set when the stored rule no longer validates; nothing was evaluated.
    rule_error: Optional[str] = None
    path: tuple[RuleStage, ...] = ()

    @property
    def action_name(self) -> str:
        return getattr(self.action_type, "value", self.action_type)

    def values(self, *, found_only: bool = True) -> dict[str, Any]:
        """Extracted values keyed by field key."""
        return {
            e.field_key: e.value
            for e in self.extracted_values
            if e.found or not found_only
        }

    def to_dict(self) -> dict:
        return {
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "actionType": self.action_name,
            "extractedValues": [e.to_dict() for e in self.extracted_values],
            "conditionResult": (
                self.condition_result.to_dict() if self.condition_result else None
            ),
            "missingRequired": list(self.missing_required),
            "wouldExecute": self.would_execute,
            "skipReason": self.skip_reason,
        }


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of executing one rule's action against the backend."""

    rule_id: str
    rule_name: str
    action_type: ActionType | str
    success: bool
    result: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def action_name(self) -> str:
        return getattr(self.action_type, "value", self.action_type)

    def to_dict(self) -> dict:
        return {
            "ruleId": self.rule_id,
            "rule": self.rule_name,
            "action": self.action_name,
            "success": self.success,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class ProcessingReport:
    """Per-payload processing report: partial success is representable."""

    outcomes: tuple[DispatchOutcome, ...] = ()
    evaluations: tuple[RuleEvaluationResult, ...] = ()

    @property
    def executed(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def errors(self) -> list[str]:
        return [f"Rule {o.rule_name}: {o.error}" for o in self.outcomes if not o.success]

    @property
    def status_code(self) -> int:
        """200 when every dispatched rule succeeded, 207 on partial failure."""
        return 207 if any(not o.success for o in self.outcomes) else 200

    def to_dict(self) -> dict:
        return {
            "executed": [o.to_dict() for o in self.executed],
            "errors": self.errors,
        }


@dataclass(frozen=True)
class TestSummary:
    __test__ = False

    total_rules: int
    enabled_rules: int
    disabled_rules: int
    would_execute: int

    def to_dict(self) -> dict:
        return {
            "totalRules": self.total_rules,
            "enabledRules": self.enabled_rules,
            "disabledRules": self.disabled_rules,
            "wouldExecute": self.would_execute,
        }


@dataclass(frozen=True)
class TestReport:
    """Dry-run (or live) test of all rules of one webhook."""

    __test__ = False  # not a pytest test class

    webhook_id: str
    webhook_name: str
    test_payload: Any
    rule_results: tuple[RuleEvaluationResult, ...]
    summary: TestSummary
    response_time_ms: float
    dry_run: bool
    live_result: Optional[ProcessingReport] = None
    success: bool = True

    def to_dict(self) -> dict:
        live = None
        if self.live_result is not None:
            live = {"status": self.live_result.status_code, **self.live_result.to_dict()}
        return {
            "success": self.success,
            "webhook": {"id": self.webhook_id, "name": self.webhook_name},
            "testPayload": self.test_payload,
            "ruleResults": [r.to_dict() for r in self.rule_results],
            "summary": self.summary.to_dict(),
            "responseTimeMs": self.response_time_ms,
            "dryRun": self.dry_run,
            "liveResult": live,
        }
