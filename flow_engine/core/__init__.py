"""Core domain models and business logic."""

from flow_engine.core.compiler import CompiledFlow, CompiledRuleSet, compile_rule_set, parse_rule_set
from flow_engine.core.errors import (
    ConfigurationError,
    CorrelationMismatchError,
    EngineInvariantError,
    FlowEngineError,
    FunctionBudgetExceeded,
    FunctionCallError,
    NotFoundError,
    ValidationError,
)
from flow_engine.core.models import EngineResult, FlowDefinition, IgnoredEvent, RuleSet, Task
from flow_engine.core.state_machine import InstanceStatus, NodeRunStatus, TaskStatus
from flow_engine.core.timeline import Timeline

__all__ = [
    "CompiledFlow",
    "CompiledRuleSet",
    "ConfigurationError",
    "CorrelationMismatchError",
    "EngineInvariantError",
    "EngineResult",
    "FlowDefinition",
    "FlowEngineError",
    "FunctionBudgetExceeded",
    "FunctionCallError",
    "IgnoredEvent",
    "InstanceStatus",
    "NodeRunStatus",
    "NotFoundError",
    "RuleSet",
    "Task",
    "TaskStatus",
    "Timeline",
    "ValidationError",
    "compile_rule_set",
    "parse_rule_set",
]
