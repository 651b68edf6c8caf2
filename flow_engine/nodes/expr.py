"""Boolean expression node."""

from flow_engine.core.models import ExprNode, JsonObject
from flow_engine.expressions.logic import ExpressionEvaluator


async def run_expr_node(evaluator: ExpressionEvaluator, node: ExprNode, context: JsonObject) -> bool:
    """Evaluate the node's expression against the context."""
    return await evaluator.matches(node.expr, context)
