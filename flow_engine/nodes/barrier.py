"""
Multi-input barrier synchronization.

A barrier waits for reports on several topics sharing one correlation key.
Each report is judged PASS or FAIL by its input's pass expression, and the
barrier mode decides when the barrier is complete:

- ALL: every expected topic has reported; passed iff all of them passed
- ANY: the first PASS completes it; if every topic reported and none
  passed, it completes failed
- QUORUM: ``quorum`` PASS reports complete it; otherwise it completes
  failed once every topic reported

A FAIL report never ends a barrier early on its own.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flow_engine.core.errors import EngineInvariantError
from flow_engine.core.models import (
    BarrierMode,
    BarrierNode,
    BarrierProgress,
    BarrierTopicRecord,
    JsonObject,
    utcnow,
)
from flow_engine.expressions.logic import ExpressionEvaluator


@dataclass
class BarrierState:
    completed: bool
    passed: bool


@dataclass
class BarrierEventOutcome:
    """Progress after one event, plus the merged payload when requested."""

    progress: BarrierProgress
    record: BarrierTopicRecord
    completed: bool
    passed: bool
    merged: Optional[JsonObject] = None


def create_barrier_progress(
    node: BarrierNode,
    instance_id: str,
    key: str,
    now: Optional[datetime] = None,
) -> BarrierProgress:
    """Fresh progress expecting every configured input topic."""
    created_at = now or utcnow()
    timeout_at = None
    if node.barrier.timeout_ms:
        timeout_at = created_at + timedelta(milliseconds=node.barrier.timeout_ms)

    return BarrierProgress(
        node_id=node.id,
        instance_id=instance_id,
        key=key,
        mode=node.barrier.mode,
        quorum=node.barrier.quorum,
        expected_topics=[item.topic for item in node.barrier.inputs],
        emit_merged=node.barrier.emit_merged,
        timeout_at=timeout_at,
        created_at=created_at,
    )


def determine_barrier_state(progress: BarrierProgress) -> BarrierState:
    """
    Apply the completion rule of the barrier's mode.

    Raises:
        EngineInvariantError: For a QUORUM barrier without a positive quorum
    """
    received = list(progress.received.values())
    pass_count = sum(1 for record in received if record.passed)
    total_expected = len(progress.expected_topics)
    received_all = len(received) >= total_expected

    match progress.mode:
        case BarrierMode.ALL:
            if not received_all:
                return BarrierState(completed=False, passed=False)
            return BarrierState(completed=True, passed=pass_count == total_expected)
        case BarrierMode.ANY:
            if pass_count > 0:
                return BarrierState(completed=True, passed=True)
            return BarrierState(completed=received_all, passed=False)
        case BarrierMode.QUORUM:
            quorum = progress.quorum or 0
            if quorum <= 0:
                raise EngineInvariantError(f"Barrier node '{progress.node_id}' quorum must be > 0")
            if pass_count >= quorum:
                return BarrierState(completed=True, passed=True)
            return BarrierState(completed=received_all, passed=False)
        case _:
            raise EngineInvariantError(f"Unsupported barrier mode {progress.mode}")


def merge_payloads(progress: BarrierProgress) -> JsonObject:
    """Field-union of PASS payloads; later-received topics win on collision."""
    merged: JsonObject = {}
    for record in progress.received.values():
        if record.passed and record.payload:
            merged.update(record.payload)
    return merged


async def apply_barrier_event(
    evaluator: ExpressionEvaluator,
    node: BarrierNode,
    progress: BarrierProgress,
    topic: str,
    payload: JsonObject,
    context: JsonObject,
    now: Optional[datetime] = None,
) -> BarrierEventOutcome:
    """
    Record one topic report on the progress and recompute completion.

    The pass expression is evaluated against ``{"context": ..., "event": ...}``;
    an input without one always passes.

    Raises:
        EngineInvariantError: If the barrier does not expect the topic
    """
    barrier_input = node.barrier.find_input(topic)
    if barrier_input is None:
        raise EngineInvariantError(f"Barrier node '{node.id}' received unexpected topic '{topic}'")

    if barrier_input.pass_expr is None:
        passed = True
    else:
        passed = await evaluator.matches(
            barrier_input.pass_expr,
            {"context": context, "event": payload},
        )

    record = BarrierTopicRecord(
        topic=topic,
        passed=passed,
        payload=payload,
        started_at=progress.created_at,
        ended_at=now or utcnow(),
    )
    progress.received[topic] = record

    state = determine_barrier_state(progress)
    progress.completed = state.completed
    progress.passed = state.passed

    merged = merge_payloads(progress) if progress.emit_merged and state.completed else None
    return BarrierEventOutcome(
        progress=progress,
        record=record,
        completed=state.completed,
        passed=state.passed,
        merged=merged,
    )
