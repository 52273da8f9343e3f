"""
Condition operators for route and completion expressions.

New operators are added by subclassing ``ExpressionOperator`` and
registering them on an ``OperatorRegistry``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class Operator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    CONTAINS = "contains"
    STARTSWITH = "startswith"
    ENDSWITH = "endswith"
    REGEX = "regex"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class ExpressionOperator(ABC):
    """One comparison; ``evaluate`` may raise on incomparable values."""

    @property
    @abstractmethod
    def name(self) -> Operator: ...

    @abstractmethod
    def evaluate(self, field_value: Any, condition_value: Any) -> bool: ...


class EqualOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.EQ

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return bool(field_value == condition_value)


class NotEqualOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.NE

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return bool(field_value != condition_value)


class GreaterThanOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.GT

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        return bool(field_value > condition_value)


class LessThanOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.LT

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        return bool(field_value < condition_value)


class GreaterEqualOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.GE

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        return bool(field_value >= condition_value)


class LessEqualOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.LE

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        return bool(field_value <= condition_value)


class InOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.IN

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return field_value in condition_value


class NotInOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.NOT_IN

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return field_value not in condition_value


class BetweenOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.BETWEEN

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        low, high = condition_value
        return bool(low <= field_value <= high)


class ContainsOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.CONTAINS

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        return condition_value in field_value


class StartsWithOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.STARTSWITH

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return isinstance(field_value, str) and field_value.startswith(condition_value)


class EndsWithOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.ENDSWITH

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return isinstance(field_value, str) and field_value.endswith(condition_value)


class RegexOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.REGEX

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        if field_value is None:
            return False
        return re.search(condition_value, str(field_value)) is not None


class IsNullOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.IS_NULL

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        expected = True if condition_value is None else bool(condition_value)
        return (field_value is None) == expected


class IsNotNullOperator(ExpressionOperator):
    @property
    def name(self) -> Operator:
        return Operator.IS_NOT_NULL

    def evaluate(self, field_value: Any, condition_value: Any) -> bool:
        return field_value is not None


class OperatorRegistry:
    """Registry of operator strategies keyed by ``Operator``."""

    def __init__(self) -> None:
        self._operators: dict[Operator, ExpressionOperator] = {}

    def register(self, operator: ExpressionOperator) -> None:
        self._operators[operator.name] = operator

    def register_all(self, *operators: ExpressionOperator) -> None:
        for op in operators:
            self.register(op)

    def get(self, name: Operator) -> ExpressionOperator | None:
        return self._operators.get(name)

    @property
    def supported_operators(self) -> set[Operator]:
        return set(self._operators)

    def evaluate(self, name: Operator, field_value: Any, condition_value: Any) -> bool:
        """
        Raises:
            ValueError: If the operator is not registered.
        """
        op = self.get(name)
        if op is None:
            raise ValueError(f"Unsupported operator: {name}")
        return op.evaluate(field_value, condition_value)


def build_default_registry() -> OperatorRegistry:
    registry = OperatorRegistry()
    registry.register_all(
        EqualOperator(),
        NotEqualOperator(),
        GreaterThanOperator(),
        LessThanOperator(),
        GreaterEqualOperator(),
        LessEqualOperator(),
        InOperator(),
        NotInOperator(),
        BetweenOperator(),
        ContainsOperator(),
        StartsWithOperator(),
        EndsWithOperator(),
        RegexOperator(),
        IsNullOperator(),
        IsNotNullOperator(),
    )
    return registry
