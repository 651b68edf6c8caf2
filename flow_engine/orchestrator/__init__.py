"""Flow execution and routing."""

from flow_engine.orchestrator.engine import Engine, TimeoutSweepReport, close_orphaned_records
from flow_engine.orchestrator.locks import InstanceLocks
from flow_engine.orchestrator.manager import EngineManager, RegisteredRuleSet

__all__ = [
    "Engine",
    "EngineManager",
    "InstanceLocks",
    "RegisteredRuleSet",
    "TimeoutSweepReport",
    "close_orphaned_records",
]
