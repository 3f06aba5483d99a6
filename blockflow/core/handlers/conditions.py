"""Structured condition evaluation for condition and router blocks.

NO arbitrary code execution - only structured operators. The left-hand side
is an already-resolved input value (usually a `<block.response.field>`
reference), so evaluation never reaches into run state itself.
"""

from __future__ import annotations

import logging
from numbers import Number
from typing import Any, Literal

from pydantic import BaseModel, model_validator

logger = logging.getLogger(__name__)

Operator = Literal[
    "==", "!=", ">", "<", ">=", "<=", "in", "not_in", "contains", "starts_with", "ends_with"
]


class ConditionSpec(BaseModel):
    """
    One branch of a condition block, or one rule of a router.

    A branch without an operator is an `else` branch and always matches.
    """

    id: str
    title: str | None = None
    left: Any = None
    operator: Operator | None = None
    value: Any = None

    @model_validator(mode="after")
    def check_value_type_for_operator(self) -> ConditionSpec:
        """Ensure value type is compatible with the operator."""
        if self.operator in ("in", "not_in") and not isinstance(self.value, (list, str)):
            raise ValueError(f"Operator '{self.operator}' requires value to be a list or string.")
        return self

    @property
    def is_else(self) -> bool:
        return self.operator is None


def _comparable(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if isinstance(left, Number) and isinstance(right, Number):
        return True
    return type(left) is type(right)


def evaluate_condition(condition: ConditionSpec) -> bool:
    """
    Evaluate a structured condition safely.

    Type mismatches and invalid comparisons return False instead of raising.
    """
    if condition.is_else:
        return True

    left, op, right = condition.left, condition.operator, condition.value
    try:
        if op == "==":
            return left == right
        elif op == "!=":
            return left != right
        elif op in (">", "<", ">=", "<="):
            # Comparison operators require compatible types
            if left is None or not _comparable(left, right):
                return False
            if op == ">":
                return left > right
            if op == "<":
                return left < right
            if op == ">=":
                return left >= right
            return left <= right
        elif op == "in":
            return left in right
        elif op == "not_in":
            return left not in right
        elif op == "contains":
            # Support str, list, and dict (check for key)
            if isinstance(left, (dict, str, list)):
                return right in left
            return False
        elif op == "starts_with":
            return left.startswith(right) if isinstance(left, str) else False
        elif op == "ends_with":
            return left.endswith(right) if isinstance(left, str) else False
        return False
    except (TypeError, AttributeError):
        # Any comparison error returns False instead of crashing
        logger.debug(f"Condition '{condition.id}' could not compare {left!r} {op} {right!r}")
        return False


def first_match(conditions: list[ConditionSpec]) -> ConditionSpec | None:
    """Return the first branch that matches, in declaration order."""
    for condition in conditions:
        if evaluate_condition(condition):
            return condition
    return None
