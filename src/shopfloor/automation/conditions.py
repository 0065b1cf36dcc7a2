"""Rule condition evaluation.

Comparisons are made on string-coerced values so that a payload number
``5`` matches a stored condition value ``"5"``. An unknown operator always
fails; nothing here raises.
"""

from __future__ import annotations

import json
from typing import Any

from shopfloor.models.evaluation import ConditionResult
from shopfloor.models.rules import ConditionOperator


def coerce_text(value: Any) -> str | None:
    """String form used for comparisons; None stays None (absent)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)
    return str(value)


def _show(value: Any) -> str:
    if value is None:
        return "undefined"
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)


def evaluate_condition(
    value: Any,
    operator: str,
    comparand: Any,
    *,
    field: str = "value",
) -> ConditionResult:
    """Check *value* (already extracted; None when absent) against *comparand*.

    ``equals`` never passes for an absent value and ``not_equals`` always
    does. ``contains`` treats an absent value as the empty string.
    ``exists`` ignores *comparand*.
    """
    text = coerce_text(value)
    expected = coerce_text(comparand)
    if expected is None:
        expected = ""

    try:
        op = ConditionOperator(operator)
    except ValueError:
        return ConditionResult(passed=False, reason=f"Unknown operator: {operator!r}")

    if op is ConditionOperator.EQUALS:
        passed = text is not None and text == expected
        symbol = "==" if passed else "!="
        return ConditionResult(
            passed=passed, reason=f"{field} ({_show(value)}) {symbol} {_show(expected)}"
        )
    if op is ConditionOperator.NOT_EQUALS:
        passed = text is None or text != expected
        symbol = "!=" if passed else "=="
        return ConditionResult(
            passed=passed, reason=f"{field} ({_show(value)}) {symbol} {_show(expected)}"
        )
    if op is ConditionOperator.CONTAINS:
        passed = expected in (text or "")
        verb = "contains" if passed else "does not contain"
        return ConditionResult(
            passed=passed, reason=f"{field} ({_show(value)}) {verb} {_show(expected)}"
        )
    passed = value is not None
    return ConditionResult(
        passed=passed, reason=f"{field} {'exists' if passed else 'does not exist'}"
    )
