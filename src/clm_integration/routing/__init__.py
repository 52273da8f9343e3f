"""Content-based routing."""

from .expressions import ExpressionEvaluator, envelope_context
from .operators import Operator, OperatorRegistry, build_default_registry
from .router import Router

__all__ = [
    "ExpressionEvaluator",
    "Operator",
    "OperatorRegistry",
    "Router",
    "build_default_registry",
    "envelope_context",
]
