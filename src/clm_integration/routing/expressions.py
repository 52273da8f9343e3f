"""Evaluate route and completion expressions.

Expressions are plain dicts, so they can live in configuration::

    {"attr": "payload.amount", "op": ">", "val": 1000}
    {"op": "and", "conditions": [...]}
    {"op": "or", "conditions": [...]}
    {"op": "not", "condition": {...}}

``attr`` is a dotted path resolved against the evaluation context. Missing
attributes resolve to ``None``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..exceptions import ExpressionError
from ..utils import resolve_path
from .operators import Operator, OperatorRegistry, build_default_registry

if TYPE_CHECKING:
    from ..domain.envelope import MessageEnvelope

_LOGICAL = frozenset({"and", "or", "not"})


class ExpressionEvaluator:
    def __init__(self, registry: OperatorRegistry | None = None) -> None:
        self._registry = registry or build_default_registry()

    def evaluate(self, expression: dict[str, Any], context: Any) -> bool:
        """Evaluate *expression* against *context*.

        Raises:
            ExpressionError: malformed expression or incomparable values.
        """
        if not isinstance(expression, dict):
            raise ExpressionError(f"Expression must be a mapping, got {expression!r}")
        op = expression.get("op")
        if op in _LOGICAL:
            return self._evaluate_logical(op, expression, context)

        attr = expression.get("attr")
        if not attr:
            raise ExpressionError(f"Expression is missing 'attr': {expression!r}")
        try:
            operator = Operator(op if op is not None else "=")
        except ValueError as exc:
            raise ExpressionError(f"Unknown operator {op!r}") from exc

        field_value = resolve_path(context, attr, None)
        try:
            return self._registry.evaluate(operator, field_value, expression.get("val"))
        except Exception as exc:  # noqa: BLE001
            raise ExpressionError(
                f"Cannot evaluate {attr} {operator.value} {expression.get('val')!r}: "
                f"{exc}"
            ) from exc

    def _evaluate_logical(
        self, op: str, expression: dict[str, Any], context: Any
    ) -> bool:
        if op == "not":
            inner = expression.get("condition")
            if inner is None:
                raise ExpressionError("'not' requires a 'condition'")
            return not self.evaluate(inner, context)
        conditions = expression.get("conditions")
        if not isinstance(conditions, list) or not conditions:
            raise ExpressionError(f"'{op}' requires a non-empty 'conditions' list")
        if op == "and":
            return all(self.evaluate(c, context) for c in conditions)
        return any(self.evaluate(c, context) for c in conditions)


def envelope_context(envelope: MessageEnvelope) -> dict[str, Any]:
    """Attributes visible to route expressions and destination templates."""
    context = envelope.model_dump(mode="python")
    context["headers"] = envelope.headers()
    context["status"] = envelope.status.value
    return context
