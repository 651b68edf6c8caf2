"""Executors for the six flow node kinds."""

from flow_engine.nodes.barrier import (
    BarrierEventOutcome,
    apply_barrier_event,
    create_barrier_progress,
    determine_barrier_state,
    merge_payloads,
)
from flow_engine.nodes.expr import run_expr_node
from flow_engine.nodes.human import create_human_task
from flow_engine.nodes.merge import run_merge_node
from flow_engine.nodes.table import TableEvaluation, evaluate_decision_table
from flow_engine.nodes.wait import WaitRegistration, build_wait_registration, correlation_index_key

__all__ = [
    "BarrierEventOutcome",
    "TableEvaluation",
    "WaitRegistration",
    "apply_barrier_event",
    "build_wait_registration",
    "correlation_index_key",
    "create_barrier_progress",
    "create_human_task",
    "determine_barrier_state",
    "evaluate_decision_table",
    "merge_payloads",
    "run_expr_node",
    "run_merge_node",
]
