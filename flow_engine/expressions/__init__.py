"""Expression evaluation and the function registry."""

from flow_engine.expressions.builtins import create_default_registry
from flow_engine.expressions.logic import ExpressionEvaluator, truthy
from flow_engine.expressions.registry import FunctionCallContext, FunctionRegistry

__all__ = [
    "ExpressionEvaluator",
    "FunctionCallContext",
    "FunctionRegistry",
    "create_default_registry",
    "truthy",
]
