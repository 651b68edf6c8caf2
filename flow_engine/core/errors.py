"""
Error taxonomy for the flow engine.

Every error raised by the engine derives from FlowEngineError so the
boundary (HTTP layer, callers) can map them in one place.
"""

from typing import Optional


class FlowEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(FlowEngineError):
    """Bad rule-set, flow, table or schema reference. Raised at registration."""

    def __init__(self, message: str, flow: Optional[str] = None):
        self.flow = flow
        super().__init__(message)


class NotFoundError(FlowEngineError):
    """Missing flow, instance, task or table."""

    def __init__(self, kind: str, identifier: str, message: str = ""):
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f"{kind} '{identifier}' not found")


class ValidationError(FlowEngineError):
    """Payload does not conform to its declared schema."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = errors or []
        super().__init__(message)


class CorrelationMismatchError(FlowEngineError):
    """Event or task does not match the instance's current waiting state."""

    def __init__(self, instance_id: str, message: str):
        self.instance_id = instance_id
        super().__init__(message)


class EngineInvariantError(FlowEngineError):
    """Unknown node kind, missing compiled node or another internal bug."""


class FunctionCallError(FlowEngineError):
    """Registry function is unknown or failed."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(message)


class FunctionBudgetExceeded(FunctionCallError):
    """Registry function ran past its time budget."""

    def __init__(self, name: str, budget_ms: int, elapsed_ms: Optional[float] = None):
        self.budget_ms = budget_ms
        self.elapsed_ms = elapsed_ms
        if elapsed_ms is None:
            message = f"Function '{name}' timed out after {budget_ms}ms"
        else:
            message = f"Function '{name}' exceeded budget ({elapsed_ms:.2f}ms > {budget_ms}ms)"
        super().__init__(name, message)
