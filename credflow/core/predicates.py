"""
Condition predicates.

Condition nodes and guarded edges delegate evaluation to a ConditionPredicate.
The shipped RulePredicate understands the editor's visual rule format:

    {
        "connector": "and",            # or "or"; defaults to the first rule's connector
        "rules": [
            {"field": "applicant.age", "operator": ">=", "value": 18},
            {"field": "documents", "operator": "contains", "value": "crm"}
        ]
    }

A bare rule dict, a list of rules, or a boolean literal are also accepted.
Anything richer belongs in a custom predicate.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from .exceptions import GraphExecutionError

logger = logging.getLogger(__name__)

MISSING = object()


class ConditionPredicate(ABC):
    """Evaluates an expression against the workflow context."""

    @abstractmethod
    def evaluate(self, expression: Any, context: Dict[str, Any]) -> bool:
        pass


def resolve_field(context: Dict[str, Any], path: str) -> Any:
    """Look up a dotted path ("applicant.address.city") in the context."""
    current: Any = context
    for part in str(path).split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


def _coerce(value: Any) -> Any:
    # Visual rules store every value as text; numeric text compares as a number
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            return value
    return value


class RulePredicate(ConditionPredicate):
    """Field/operator/value rules joined by a single and/or connector."""

    OPERATORS = ("===", "!==", "==", "!=", ">", "<", ">=", "<=", "contains", "in", "exists")

    def evaluate(self, expression: Any, context: Dict[str, Any]) -> bool:
        if isinstance(expression, bool):
            return expression
        if expression is None:
            return True

        if isinstance(expression, list):
            rules, connector = expression, None
        elif isinstance(expression, dict) and "rules" in expression:
            rules, connector = expression.get("rules") or [], expression.get("connector")
        elif isinstance(expression, dict) and "field" in expression:
            rules, connector = [expression], None
        else:
            raise GraphExecutionError(f"Unsupported condition expression: {expression!r}")

        if not rules:
            return True

        connector = (connector or rules[0].get("connector") or "and").lower()
        if connector not in ("and", "or"):
            raise GraphExecutionError(f"Unsupported condition connector: {connector}")

        results = [self._evaluate_rule(rule, context) for rule in rules]
        result = all(results) if connector == "and" else any(results)

        logger.debug("Condition evaluated", extra={"rules": len(rules), "connector": connector, "result": result})
        return result

    def _evaluate_rule(self, rule: Dict[str, Any], context: Dict[str, Any]) -> bool:
        field = rule.get("field")
        operator = rule.get("operator", "===")
        if not field:
            raise GraphExecutionError(f"Condition rule missing 'field': {rule}")
        if operator not in self.OPERATORS:
            raise GraphExecutionError(f"Unsupported condition operator: {operator}")

        actual = resolve_field(context, field)
        if operator == "exists":
            return actual is not MISSING and actual is not None
        if actual is MISSING:
            actual = None

        raw = rule.get("value")
        expected = _coerce(raw)
        value = _coerce(actual)

        if operator in ("===", "=="):
            return value == expected
        if operator in ("!==", "!="):
            return value != expected
        if operator == "contains":
            if isinstance(actual, str):
                return raw is not None and str(raw) in actual
            if isinstance(actual, (list, tuple, set)):
                return expected in [_coerce(item) for item in actual]
            if isinstance(actual, dict):
                return isinstance(raw, str) and raw in actual
            return False
        if operator == "in":
            options: List[Any] = raw if isinstance(raw, (list, tuple)) else [raw]
            return value in [_coerce(option) for option in options]

        try:
            if operator == ">":
                return value > expected
            if operator == "<":
                return value < expected
            if operator == ">=":
                return value >= expected
            return value <= expected
        except TypeError:
            # None or mismatched types never satisfy an ordering rule
            return False
