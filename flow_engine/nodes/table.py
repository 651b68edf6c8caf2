"""
Decision table evaluation.

A rule matches when every condition of its ``when`` list holds against the
context. The table's hit policy then picks the result among the matches.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from flow_engine.core.errors import EngineInvariantError
from flow_engine.core.models import (
    DecisionTable,
    HitPolicy,
    JsonObject,
    TableCondition,
    TableOperator,
    TableRule,
)
from flow_engine.core.paths import resolve_path
from flow_engine.expressions.logic import is_number, strict_equals


@dataclass
class TableEvaluation:
    """Result of evaluating a decision table."""

    result: Optional[JsonObject] = None
    matched_rules: list[TableRule] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return bool(self.matched_rules)

    def to_context(self) -> JsonObject:
        """Shape stored under ``context.decisions[node_id]``."""
        return {
            "result": self.result,
            "matchedRules": [rule.model_dump(mode="json", exclude_none=True) for rule in self.matched_rules],
        }


def _numeric(actual: Any, expected: Any) -> bool:
    return is_number(actual) and is_number(expected)


def evaluate_condition(condition: TableCondition, context: JsonObject) -> bool:
    """
    Evaluate a single condition.

    Raises:
        EngineInvariantError: If the operator is not supported
    """
    actual = resolve_path(context, condition.path)
    expected = condition.value

    match condition.op:
        case TableOperator.EXISTS:
            return actual is not None
        case TableOperator.MATCHES:
            if not isinstance(actual, str) or not isinstance(expected, str):
                return False
            return re.search(expected, actual) is not None
        case TableOperator.IN:
            return isinstance(expected, list) and any(strict_equals(actual, v) for v in expected)
        case TableOperator.NOT_IN:
            return isinstance(expected, list) and not any(strict_equals(actual, v) for v in expected)
        case TableOperator.EQ:
            return strict_equals(actual, expected)
        case TableOperator.NE:
            return not strict_equals(actual, expected)
        case TableOperator.GT:
            return _numeric(actual, expected) and actual > expected
        case TableOperator.GTE:
            return _numeric(actual, expected) and actual >= expected
        case TableOperator.LT:
            return _numeric(actual, expected) and actual < expected
        case TableOperator.LTE:
            return _numeric(actual, expected) and actual <= expected
        case _:
            raise EngineInvariantError(f"Unsupported operator {condition.op}")


def rule_matches(rule: TableRule, context: JsonObject) -> bool:
    return all(evaluate_condition(condition, context) for condition in rule.when)


def evaluate_decision_table(table: DecisionTable, context: JsonObject) -> TableEvaluation:
    """
    Evaluate a decision table against a context.

    Hit policies:
    - FIRST: the first declared matching rule
    - PRIORITY: the matching rule with the highest priority (ties keep
      declaration order)
    - MERGE: field-union of all matching results, later rules overwriting
      earlier ones; every matching rule is reported
    """
    matched = [rule for rule in table.rules if rule_matches(rule, context)]
    if not matched:
        return TableEvaluation()

    match table.hit_policy:
        case HitPolicy.FIRST:
            rule = matched[0]
            return TableEvaluation(result=dict(rule.result), matched_rules=[rule])
        case HitPolicy.PRIORITY:
            # sorted() is stable, so equal priorities keep declaration order.
            rule = sorted(matched, key=lambda r: r.priority or 0, reverse=True)[0]
            return TableEvaluation(result=dict(rule.result), matched_rules=[rule])
        case HitPolicy.MERGE:
            merged: JsonObject = {}
            for rule in matched:
                merged.update(rule.result)
            return TableEvaluation(result=merged, matched_rules=matched)
        case _:
            raise EngineInvariantError(f"Unsupported hit policy {table.hit_policy}")
