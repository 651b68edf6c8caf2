"""
Flow execution engine.

Interprets the compiled flows of one rule set:
- instance registry and per-instance locking
- the traversal loop and node dispatch
- suspension on forms, events and barriers, and their resumption
- event correlation through the wait and barrier indices
- the timeout sweep and reconciliation of expired durable records
"""

import copy
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Never, NoReturn, Optional, Union

from flow_engine.core.compiler import CompiledFlow, CompiledRuleSet
from flow_engine.core.errors import (
    ConfigurationError,
    CorrelationMismatchError,
    EngineInvariantError,
    FlowEngineError,
    FunctionCallError,
    NotFoundError,
    ValidationError,
)
from flow_engine.core.models import (
    BarrierNode,
    BarrierProgress,
    DecisionTable,
    EngineResult,
    ExecutionMetrics,
    ExprNode,
    FlowDefinition,
    FlowEdge,
    FlowNode,
    HumanFormNode,
    IgnoredEvent,
    InstanceSnapshot,
    JsonObject,
    MergeNode,
    TableNode,
    Task,
    WaitEventNode,
    WaitingFor,
    new_id,
    utcnow,
)
from flow_engine.core.paths import resolve_path
from flow_engine.core.state_machine import (
    InstanceStateMachine,
    InstanceStatus,
    NodeRunStatus,
    TaskStatus,
)
from flow_engine.core.timeline import Timeline
from flow_engine.expressions.logic import ExpressionEvaluator
from flow_engine.nodes.barrier import apply_barrier_event, create_barrier_progress
from flow_engine.nodes.expr import run_expr_node
from flow_engine.nodes.human import create_human_task
from flow_engine.nodes.merge import run_merge_node
from flow_engine.nodes.table import evaluate_decision_table
from flow_engine.nodes.wait import WaitRegistration, build_wait_registration, correlation_index_key
from flow_engine.orchestrator.locks import InstanceLocks
from flow_engine.storage.base import BarrierRecord, EngineStorage, NodeRunHandle, NodeRunMetrics
from flow_engine.validation.schemas import SchemaValidator

logger = logging.getLogger(__name__)

# Terminal instances kept for status queries after they leave the registry.
FINISHED_CAPACITY = 1024


# ==================== Waiting States ====================


@dataclass
class HumanFormWaiting:
    node: HumanFormNode
    handle: NodeRunHandle
    task: Task
    resume_to: Optional[str]


@dataclass
class WaitEventWaiting:
    node: WaitEventNode
    handle: NodeRunHandle
    registration: WaitRegistration
    resume_to: Optional[str]
    timeout_to: Optional[str]


@dataclass
class BarrierWaiting:
    node: BarrierNode
    handle: NodeRunHandle
    key: str
    progress: BarrierProgress
    pass_to: Optional[str]
    fail_to: Optional[str]
    timeout_to: Optional[str]


WaitingState = Union[HumanFormWaiting, WaitEventWaiting, BarrierWaiting]


@dataclass
class InstanceState:
    """A live instance held by the engine."""

    id: str
    flow: CompiledFlow
    context: JsonObject
    timeline: Timeline = field(default_factory=Timeline)
    machine: InstanceStateMachine = field(default_factory=InstanceStateMachine)
    waiting: Optional[WaitingState] = None

    @property
    def status(self) -> InstanceStatus:
        return self.machine.state

    @property
    def flow_name(self) -> str:
        return self.flow.name


@dataclass(frozen=True)
class IndexEntry:
    """Correlation index value: which instance and node expect a topic/key."""

    instance_id: str
    node_id: str


@dataclass
class _Step:
    next_node_id: Optional[str] = None
    suspended: Optional[EngineResult] = None


@dataclass
class TimeoutSweepReport:
    """What one timeout sweep did."""

    barriers_timed_out: int = 0
    waits_timed_out: int = 0
    tasks_expired: int = 0
    orphans_reconciled: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[EngineResult] = field(default_factory=list)

    @property
    def resolved(self) -> int:
        return self.barriers_timed_out + self.waits_timed_out + self.tasks_expired

    def merge(self, other: "TimeoutSweepReport") -> None:
        self.barriers_timed_out += other.barriers_timed_out
        self.waits_timed_out += other.waits_timed_out
        self.tasks_expired += other.tasks_expired
        self.orphans_reconciled += other.orphans_reconciled
        self.skipped += other.skipped
        self.failed += other.failed
        self.results.extend(other.results)


def _target(edge: Optional[FlowEdge], fallback: Optional[str]) -> Optional[str]:
    return edge.target if edge is not None else fallback


def _bucket(context: JsonObject, name: str) -> JsonObject:
    """Per-kind sub-document of the context, created on first use."""
    bucket = context.get(name)
    if not isinstance(bucket, dict):
        bucket = {}
        context[name] = bucket
    return bucket


def _dump_progress(progress: BarrierProgress) -> JsonObject:
    return progress.model_dump(mode="json", by_alias=True)


def _unreachable(node: Never) -> NoReturn:
    raise EngineInvariantError(f"Unhandled node type {getattr(node, 'type', node)!r}")


async def close_orphaned_records(
    storage: EngineStorage,
    now: datetime,
    is_loaded: Callable[[str], bool],
) -> TimeoutSweepReport:
    """
    Durably close expired barriers and tasks whose instance no process holds.

    Records of loaded instances are left to their engine. Only unresolved
    records are returned by storage, so a second pass is a no-op.
    """
    report = TimeoutSweepReport()

    for record in await storage.find_expired_barriers(now):
        if is_loaded(record.instance_id):
            continue
        progress = record.progress
        if progress.completed:
            report.skipped += 1
            continue
        progress.completed = True
        progress.passed = False
        await storage.save_barrier(record.instance_id, record.node_id, record.key, progress)
        report.orphans_reconciled += 1
        logger.warning(
            f"Closed orphaned barrier {record.node_id}/{record.key} "
            f"of instance {record.instance_id}"
        )

    for task in await storage.find_expired_tasks(now):
        if is_loaded(task.workflow_instance_id):
            continue
        if task.status != TaskStatus.OPEN:
            report.skipped += 1
            continue
        await storage.expire_task(task.id)
        report.orphans_reconciled += 1
        logger.warning(f"Expired orphaned task {task.id} of instance {task.workflow_instance_id}")

    return report


class Engine:
    """
    Executes the flows of one compiled rule set.

    Responsibilities:
    - Start instances and walk their graph until they suspend or finish
    - Resume instances on form submission and event delivery
    - Correlate events through the wait and barrier indices
    - Resolve expired waits in the timeout sweep
    """

    def __init__(
        self,
        compiled: CompiledRuleSet,
        storage: EngineStorage,
        schemas: SchemaValidator,
        evaluator: ExpressionEvaluator,
        reconcile_orphans: bool = True,
    ):
        self.compiled = compiled
        self.storage = storage
        self.schemas = schemas
        self.evaluator = evaluator
        self.reconcile_orphans = reconcile_orphans

        missing = sorted(ref for ref in compiled.schema_refs if not schemas.has(ref))
        if missing:
            raise ConfigurationError(
                f"Rule set '{compiled.rule_set.name}' references unregistered schemas: {missing}"
            )

        self._instances: dict[str, InstanceState] = {}
        self._finished: OrderedDict[str, InstanceSnapshot] = OrderedDict()
        self._wait_index: dict[str, IndexEntry] = {}
        self._barrier_index: dict[str, IndexEntry] = {}
        self._locks = InstanceLocks()

    # ==================== Rule Set ====================

    @property
    def engine_key(self) -> str:
        return self.compiled.rule_set.engine_key

    @property
    def rule_set_meta(self) -> dict[str, str]:
        return {"name": self.compiled.rule_set.name, "version": self.compiled.rule_set.version}

    def list_flows(self) -> list[str]:
        return list(self.compiled.flows)

    def get_flow_definition(self, flow_name: str) -> FlowDefinition:
        return self._get_flow(flow_name).definition

    def _get_flow(self, flow_name: str) -> CompiledFlow:
        flow = self.compiled.flows.get(flow_name)
        if flow is None:
            raise NotFoundError("Flow", flow_name)
        return flow

    def _require_table(self, name: str) -> DecisionTable:
        table = self.compiled.tables.get(name)
        if table is None:
            raise EngineInvariantError(f"Decision table '{name}' not found")
        return table

    # ==================== Instances ====================

    def is_loaded(self, instance_id: str) -> bool:
        return instance_id in self._instances

    def knows_instance(self, instance_id: str) -> bool:
        return instance_id in self._instances or instance_id in self._finished

    @property
    def live_instance_count(self) -> int:
        return len(self._instances)

    def _get_instance(self, instance_id: str) -> InstanceState:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id, f"Instance '{instance_id}' is not loaded")
        return instance

    def get_instance_status(self, instance_id: str) -> InstanceSnapshot:
        """
        Snapshot of a live or recently finished instance.

        Raises:
            NotFoundError: If the instance is unknown to this engine
        """
        instance = self._instances.get(instance_id)
        if instance is not None:
            return self._snapshot(instance)
        snapshot = self._finished.get(instance_id)
        if snapshot is None:
            raise NotFoundError("Instance", instance_id)
        return snapshot.model_copy(deep=True)

    async def start_instance(self, flow_name: str, input: Optional[JsonObject] = None) -> EngineResult:
        """
        Start a new instance of a flow and run it until it waits or ends.

        Raises:
            NotFoundError: If the flow does not exist
            ValidationError: If the input is not an object
        """
        flow = self._get_flow(flow_name)
        if input is not None and not isinstance(input, dict):
            raise ValidationError("Workflow input must be an object")

        instance = InstanceState(id=new_id(), flow=flow, context=copy.deepcopy(input or {}))
        # Not routable until the durable record exists.
        await self.storage.on_workflow_start(instance.id, flow.name, instance.context)
        self._instances[instance.id] = instance

        async with self._locks.hold(instance.id):
            logger.info(f"Workflow started: {instance.id} (flow {flow.name})")
            return await self._run_guarded(instance, flow.entry)

    # ==================== Traversal ====================

    async def _run_guarded(self, instance: InstanceState, start_node_id: Optional[str]) -> EngineResult:
        """
        Run the traversal loop; any error terminates the instance FAILED.

        Errors outside the engine hierarchy are re-raised as EngineInvariantError.
        """
        try:
            return await self._run_until_wait_or_complete(instance, start_node_id)
        except FlowEngineError as e:
            await self._fail(instance, e)
            raise
        except Exception as e:
            await self._fail(instance, e)
            raise EngineInvariantError(f"Workflow {instance.id} failed unexpectedly: {e!r}") from e

    async def _fail(self, instance: InstanceState, error: Exception) -> None:
        if not instance.machine.is_terminal:
            logger.error(f"Workflow {instance.id} failed: {error!r}")
            try:
                await self._finish(instance, InstanceStatus.FAILED)
                return
            except Exception:
                logger.error(f"Could not record failure of workflow {instance.id}", exc_info=True)
        # The durable record may be stale, but the instance must leave live routing.
        if instance.id in self._instances:
            self._forget(instance)

    async def _run_until_wait_or_complete(
        self,
        instance: InstanceState,
        start_node_id: Optional[str],
    ) -> EngineResult:
        current = start_node_id

        while current is not None:
            node = instance.flow.get_node(current)
            if node is None:
                raise EngineInvariantError(f"Flow '{instance.flow_name}' missing node '{current}'")

            attempt = self._next_attempt(instance, node.id)
            handle = await self.storage.enter_node_run(instance.id, node.id, attempt, node.suspends)
            instance.timeline.enter(node.id, node.type, node.suspends, attempt)
            logger.debug(f"Visiting node {node.id} ({node.type}) of {instance.id}, attempt {attempt}")

            try:
                step = await self._dispatch(instance, node, handle)
            except FunctionCallError as e:
                failure_to = self._failure_target(instance.flow, node)
                if failure_to is None:
                    await self._abort_visit(instance, handle)
                    raise
                _bucket(instance.context, "errors")[node.id] = {
                    "type": type(e).__name__,
                    "message": str(e),
                }
                await self._abort_visit(instance, handle)
                logger.warning(f"Node {node.id} of {instance.id} failed, routing to {failure_to}: {e}")
                current = failure_to
                continue
            except Exception:
                await self._abort_visit(instance, handle)
                raise

            if step.suspended is not None:
                return step.suspended
            current = step.next_node_id

        await self._finish(instance, InstanceStatus.COMPLETED)
        return self._build_result(instance)

    async def _dispatch(self, instance: InstanceState, node: FlowNode, handle: NodeRunHandle) -> _Step:
        match node:
            case TableNode():
                return await self._run_table(instance, node, handle)
            case ExprNode():
                return await self._run_expr(instance, node, handle)
            case MergeNode():
                return await self._run_merge(instance, node, handle)
            case HumanFormNode():
                return await self._enter_human_form(instance, node, handle)
            case WaitEventNode():
                return await self._enter_wait_event(instance, node, handle)
            case BarrierNode():
                return await self._enter_barrier(instance, node, handle)
            case _:
                _unreachable(node)

    def _next_attempt(self, instance: InstanceState, node_id: str) -> int:
        attempts = _bucket(instance.context, "__attempts")
        previous = attempts.get(node_id)
        attempt = (previous if isinstance(previous, int) else 0) + 1
        attempts[node_id] = attempt
        return attempt

    def _failure_target(self, flow: CompiledFlow, node: FlowNode) -> Optional[str]:
        if not isinstance(node, (TableNode, ExprNode)):
            return None
        fallback = node.on_fail if isinstance(node, TableNode) else None
        return _target(flow.pick_edge(node.id, "FAIL"), fallback)

    async def _run_table(self, instance: InstanceState, node: TableNode, handle: NodeRunHandle) -> _Step:
        table = self._require_table(node.table_ref)
        evaluation = evaluate_decision_table(table, instance.context)
        _bucket(instance.context, "decisions")[node.id] = evaluation.to_context()

        edge = instance.flow.pick_edge(node.id, "MATCH" if evaluation.matched else "NO_MATCH")
        await self._close_run(instance, handle, NodeRunStatus.COMPLETED)
        return _Step(next_node_id=_target(edge, node.next))

    async def _run_expr(self, instance: InstanceState, node: ExprNode, handle: NodeRunHandle) -> _Step:
        outcome = await run_expr_node(self.evaluator, node, instance.context)
        _bucket(instance.context, "expr")[node.id] = outcome

        edge = instance.flow.pick_edge(node.id, "TRUE" if outcome else "FALSE")
        fallback = (node.on_true if outcome else node.on_false) or node.next
        await self._close_run(instance, handle, NodeRunStatus.COMPLETED)
        return _Step(next_node_id=_target(edge, fallback))

    async def _run_merge(self, instance: InstanceState, node: MergeNode, handle: NodeRunHandle) -> _Step:
        _bucket(instance.context, "merge")[node.id] = run_merge_node(node)

        edge = instance.flow.pick_edge(node.id, "NEXT")
        await self._close_run(instance, handle, NodeRunStatus.COMPLETED)
        return _Step(next_node_id=_target(edge, node.next))

    async def _enter_human_form(
        self,
        instance: InstanceState,
        node: HumanFormNode,
        handle: NodeRunHandle,
    ) -> _Step:
        task = await create_human_task(self.storage, instance.id, node, instance.context)
        _bucket(instance.context, "forms")[node.id] = {"status": TaskStatus.OPEN.value, "taskId": task.id}

        instance.waiting = HumanFormWaiting(
            node=node,
            handle=handle,
            task=task,
            resume_to=_target(instance.flow.pick_edge(node.id, "SUBMIT"), node.next),
        )
        logger.info(f"Workflow {instance.id} waiting on form task {task.id} at node {node.id}")
        return _Step(suspended=self._suspend(instance, pending_task=task))

    async def _enter_wait_event(
        self,
        instance: InstanceState,
        node: WaitEventNode,
        handle: NodeRunHandle,
    ) -> _Step:
        registration = build_wait_registration(node, instance.context)
        flow = instance.flow

        instance.waiting = WaitEventWaiting(
            node=node,
            handle=handle,
            registration=registration,
            resume_to=_target(flow.pick_edge(node.id, "EVENT", "RESUME"), node.next),
            timeout_to=_target(flow.pick_edge(node.id, "TIMEOUT", "FAIL"), node.on_timeout),
        )

        index_key = registration.index_key
        previous = self._wait_index.get(index_key)
        if previous is not None and previous.instance_id != instance.id:
            logger.warning(
                f"Wait registration {index_key} moved from instance {previous.instance_id} "
                f"to {instance.id}"
            )
        self._wait_index[index_key] = IndexEntry(instance.id, node.id)

        logger.info(f"Workflow {instance.id} waiting on event {index_key} at node {node.id}")
        return _Step(
            suspended=self._suspend(
                instance,
                waiting_for=WaitingFor(type="EVENT", topic=registration.topic, key=registration.key),
            )
        )

    async def _enter_barrier(
        self,
        instance: InstanceState,
        node: BarrierNode,
        handle: NodeRunHandle,
    ) -> _Step:
        key = resolve_path(instance.context, node.barrier.correlate_by)
        if not isinstance(key, str) or not key:
            raise EngineInvariantError(f"Barrier node '{node.id}' cannot resolve correlate key")

        progress = create_barrier_progress(node, instance.id, key)
        _bucket(instance.context, "barriers")[node.id] = {"progress": _dump_progress(progress)}

        flow = instance.flow
        instance.waiting = BarrierWaiting(
            node=node,
            handle=handle,
            key=key,
            progress=progress,
            pass_to=_target(flow.pick_edge(node.id, "PASS"), node.next),
            fail_to=_target(flow.pick_edge(node.id, "FAIL"), node.barrier.on_fail),
            timeout_to=_target(flow.pick_edge(node.id, "TIMEOUT"), node.barrier.on_fail),
        )

        entry = IndexEntry(instance.id, node.id)
        for topic in progress.expected_topics:
            self._barrier_index[correlation_index_key(topic, key)] = entry

        await self.storage.save_barrier(instance.id, node.id, key, progress)

        logger.info(
            f"Workflow {instance.id} waiting on {node.barrier.mode.value} barrier {node.id} "
            f"for key {key} ({len(progress.expected_topics)} topics)"
        )
        return _Step(suspended=self._suspend(instance, waiting_for=self._barrier_waiting_for(node, key)))

    @staticmethod
    def _barrier_waiting_for(node: BarrierNode, key: str) -> WaitingFor:
        return WaitingFor(type="BARRIER", topic=node.barrier.mode.value, key=key)

    # ==================== Run Bookkeeping ====================

    async def _close_run(self, instance: InstanceState, handle: NodeRunHandle, status: NodeRunStatus) -> None:
        """Close the open visit; returning from here is the durability checkpoint."""
        segment = instance.timeline.leave()
        metrics = NodeRunMetrics(
            duration_ms=round(segment.duration_ms),
            active_ms=round(segment.active_ms),
            waiting_ms=round(segment.waiting_ms),
        )
        await self.storage.leave_node_run(instance.id, handle, status, metrics, instance.context)

    async def _abort_visit(self, instance: InstanceState, handle: NodeRunHandle) -> None:
        if instance.timeline.open_visits:
            await self._close_run(instance, handle, NodeRunStatus.FAILED)
        instance.waiting = None

    def _suspend(
        self,
        instance: InstanceState,
        pending_task: Optional[Task] = None,
        waiting_for: Optional[WaitingFor] = None,
    ) -> EngineResult:
        if instance.status != InstanceStatus.WAITING:
            instance.machine.transition(InstanceStatus.WAITING)
        return self._build_result(instance, pending_task=pending_task, waiting_for=waiting_for)

    async def _resume(self, instance: InstanceState, target: Optional[str], reason: str) -> EngineResult:
        instance.machine.transition(InstanceStatus.RUNNING, reason=reason)
        logger.info(f"Workflow {instance.id} resumed ({reason}) at {target or 'end'}")
        return await self._run_guarded(instance, target)

    async def _finish(self, instance: InstanceState, status: InstanceStatus) -> None:
        """Move an instance to a terminal status and drop it from live routing."""
        instance.machine.transition(status)
        await self.storage.on_workflow_end(
            instance.id,
            status,
            self._metrics(instance),
            instance.context,
        )
        self._forget(instance)
        logger.info(f"Workflow {instance.id} finished with status {status.value}")

    def _forget(self, instance: InstanceState) -> None:
        self._instances.pop(instance.id, None)
        for index in (self._wait_index, self._barrier_index):
            for index_key in [k for k, entry in index.items() if entry.instance_id == instance.id]:
                del index[index_key]
        self._locks.discard(instance.id)

        self._finished[instance.id] = self._snapshot(instance)
        while len(self._finished) > FINISHED_CAPACITY:
            self._finished.popitem(last=False)

    def _metrics(self, instance: InstanceState) -> ExecutionMetrics:
        totals = instance.timeline.totals()
        return ExecutionMetrics(
            wall_ms_total=round(totals.wall_ms),
            active_ms_total=round(totals.active_ms),
            waiting_ms_total=round(totals.waiting_ms),
        )

    def _snapshot(self, instance: InstanceState) -> InstanceSnapshot:
        return InstanceSnapshot(
            id=instance.id,
            flow_name=instance.flow_name,
            status=instance.status,
            context=copy.deepcopy(instance.context),
            metrics=self._metrics(instance),
        )

    def _build_result(
        self,
        instance: InstanceState,
        pending_task: Optional[Task] = None,
        waiting_for: Optional[WaitingFor] = None,
    ) -> EngineResult:
        return EngineResult(
            instance_id=instance.id,
            status=instance.status,
            metrics=self._metrics(instance),
            pending_task=pending_task,
            waiting_for=waiting_for,
        )

    # ==================== Form Resumption ====================

    async def resume_with_form(self, task_id: str, payload: JsonObject) -> EngineResult:
        """
        Submit a form for the task an instance is waiting on.

        Raises:
            NotFoundError: If the task or its instance is unknown
            CorrelationMismatchError: If the instance is not waiting on this task
            ValidationError: If the payload does not match the form schema
        """
        if not isinstance(payload, dict):
            raise ValidationError("Form payload must be an object")
        task = await self.storage.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        instance_id = task.workflow_instance_id
        self._get_instance(instance_id)

        async with self._locks.hold(instance_id):
            instance = self._get_instance(instance_id)
            waiting = instance.waiting
            if not isinstance(waiting, HumanFormWaiting):
                raise CorrelationMismatchError(instance_id, f"Instance '{instance_id}' is not waiting on a form")
            if waiting.task.id != task_id:
                raise CorrelationMismatchError(
                    instance_id,
                    f"Task '{task_id}' does not match current waiting task",
                )

            self.schemas.validate(waiting.node.form_schema_ref, payload)

            _bucket(instance.context, "forms")[waiting.node.id] = {
                "status": TaskStatus.SUBMITTED.value,
                "taskId": task_id,
                "payload": copy.deepcopy(payload),
            }
            await self.storage.mark_task_submitted(task_id, payload)
            await self._close_run(instance, waiting.handle, NodeRunStatus.COMPLETED)
            instance.waiting = None
            return await self._resume(instance, waiting.resume_to, f"form {task_id} submitted")

    # ==================== Event Delivery ====================

    async def notify_event(
        self,
        topic: str,
        key: str,
        payload: JsonObject,
    ) -> Union[EngineResult, IgnoredEvent]:
        """
        Deliver an external event.

        The barrier index is consulted before the wait index. An event that
        matches neither is ignored, not rejected.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Event payload must be an object")
        index_key = correlation_index_key(topic, key)

        entry = self._barrier_index.get(index_key)
        if entry is not None:
            return await self._handle_barrier_event(entry, topic, key, payload)

        entry = self._wait_index.get(index_key)
        if entry is not None:
            return await self._handle_wait_event(entry, topic, key, payload)

        logger.debug(f"Ignored event {index_key}: no waiting instance")
        return IgnoredEvent(topic=topic, key=key)

    async def _handle_wait_event(
        self,
        entry: IndexEntry,
        topic: str,
        key: str,
        payload: JsonObject,
    ) -> Union[EngineResult, IgnoredEvent]:
        index_key = correlation_index_key(topic, key)

        async with self._locks.hold(entry.instance_id):
            # Resolved by a concurrent delivery or timeout while we waited.
            if self._wait_index.get(index_key) is not entry:
                return IgnoredEvent(topic=topic, key=key)

            instance = self._get_instance(entry.instance_id)
            waiting = instance.waiting
            if not isinstance(waiting, WaitEventWaiting) or waiting.node.id != entry.node_id:
                raise CorrelationMismatchError(
                    instance.id,
                    f"Instance '{instance.id}' is not waiting on {topic}:{key}",
                )
            registration = waiting.registration
            if registration.topic != topic or registration.key != key:
                raise CorrelationMismatchError(
                    instance.id,
                    f"Event ({topic}:{key}) does not match waiting registration",
                )

            if registration.schema_ref:
                self.schemas.validate(registration.schema_ref, payload)

            del self._wait_index[index_key]
            _bucket(instance.context, "events")[topic] = {
                "key": key,
                "payload": copy.deepcopy(payload),
                "receivedAt": utcnow().isoformat(),
            }
            await self._close_run(instance, waiting.handle, NodeRunStatus.COMPLETED)
            instance.waiting = None
            return await self._resume(instance, waiting.resume_to, f"event {index_key}")

    async def _handle_barrier_event(
        self,
        entry: IndexEntry,
        topic: str,
        key: str,
        payload: JsonObject,
    ) -> Union[EngineResult, IgnoredEvent]:
        index_key = correlation_index_key(topic, key)

        async with self._locks.hold(entry.instance_id):
            if self._barrier_index.get(index_key) is not entry:
                return IgnoredEvent(topic=topic, key=key)

            instance = self._get_instance(entry.instance_id)
            waiting = instance.waiting
            if not isinstance(waiting, BarrierWaiting) or waiting.node.id != entry.node_id:
                raise CorrelationMismatchError(
                    instance.id,
                    f"Instance '{instance.id}' is not waiting on barrier for {topic}:{key}",
                )
            if waiting.key != key:
                raise CorrelationMismatchError(instance.id, f"Barrier key mismatch for {key}")

            node = waiting.node
            barrier_input = node.barrier.find_input(topic)
            if barrier_input is None:
                raise EngineInvariantError(f"Barrier node '{node.id}' does not expect topic '{topic}'")
            if barrier_input.schema_ref:
                self.schemas.validate(barrier_input.schema_ref, payload)

            outcome = await apply_barrier_event(
                self.evaluator,
                node,
                waiting.progress,
                topic,
                copy.deepcopy(payload),
                instance.context,
            )
            # Each topic reports once; a re-delivery finds no entry and is ignored.
            del self._barrier_index[index_key]

            barrier_doc = {"progress": _dump_progress(outcome.progress)}
            _bucket(instance.context, "barriers")[node.id] = barrier_doc
            await self.storage.record_barrier_topic(instance.id, node.id, topic, outcome.record)
            await self.storage.save_barrier(instance.id, node.id, key, outcome.progress)

            logger.debug(
                f"Barrier {node.id} of {instance.id} received {topic} "
                f"({'PASS' if outcome.record.passed else 'FAIL'}), "
                f"{len(outcome.progress.received)}/{len(outcome.progress.expected_topics)} reported"
            )

            if not outcome.completed:
                return self._build_result(instance, waiting_for=self._barrier_waiting_for(node, key))

            self._clear_barrier_index(waiting)
            if outcome.merged is not None:
                barrier_doc["merged"] = outcome.merged

            status = NodeRunStatus.COMPLETED if outcome.passed else NodeRunStatus.FAILED
            await self._close_run(instance, waiting.handle, status)
            instance.waiting = None

            target = waiting.pass_to if outcome.passed else (waiting.fail_to or waiting.timeout_to)
            verdict = "passed" if outcome.passed else "failed"
            return await self._resume(instance, target, f"barrier {node.id} {verdict}")

    def _clear_barrier_index(self, waiting: BarrierWaiting) -> None:
        for topic in waiting.progress.expected_topics:
            index_key = correlation_index_key(topic, waiting.key)
            entry = self._barrier_index.get(index_key)
            if entry is not None and entry.instance_id == waiting.progress.instance_id:
                del self._barrier_index[index_key]

    # ==================== Timeout Sweep ====================

    async def process_timeouts(self, now: Optional[datetime] = None) -> TimeoutSweepReport:
        """
        Resolve every wait whose deadline is at or before now.

        Expired durable records are reconciled first, then the waiting
        instances held in memory are scanned. Each instance is handled
        under its lock and re-checked there, so a wait resolved by a real
        event in the meantime is skipped rather than applied twice.
        """
        now = now or utcnow()
        report = TimeoutSweepReport()

        for record in await self.storage.find_expired_barriers(now):
            if not self.is_loaded(record.instance_id):
                continue
            await self._guard_sweep(record.instance_id, report, self._reconcile_barrier(record, report))

        for task in await self.storage.find_expired_tasks(now):
            if not self.is_loaded(task.workflow_instance_id):
                continue
            await self._guard_sweep(task.workflow_instance_id, report, self._reconcile_task(task, report))

        if self.reconcile_orphans:
            report.merge(await close_orphaned_records(self.storage, now, self.is_loaded))

        for instance_id in list(self._instances):
            await self._guard_sweep(instance_id, report, self._sweep_instance(instance_id, now, report))

        if report.resolved or report.orphans_reconciled:
            logger.info(
                f"Timeout sweep for {self.engine_key}: {report.barriers_timed_out} barriers, "
                f"{report.waits_timed_out} waits, {report.tasks_expired} tasks, "
                f"{report.orphans_reconciled} orphans, {report.skipped} skipped"
            )
        return report

    async def _guard_sweep(self, instance_id: str, report: TimeoutSweepReport, work) -> None:
        """One failing instance must not stop the sweep of the others."""
        try:
            result = await work
        except Exception as e:
            report.failed += 1
            logger.error(f"Timeout handling failed for instance {instance_id}: {e}", exc_info=True)
            return
        if result is not None:
            report.results.append(result)

    async def _reconcile_barrier(self, record: BarrierRecord, report: TimeoutSweepReport) -> Optional[EngineResult]:
        async with self._locks.hold(record.instance_id):
            instance = self._instances.get(record.instance_id)
            waiting = instance.waiting if instance else None
            if (
                not isinstance(waiting, BarrierWaiting)
                or waiting.node.id != record.node_id
                or waiting.key != record.key
            ):
                report.skipped += 1
                logger.warning(
                    f"Skipping expired barrier {record.node_id}/{record.key}: "
                    f"instance {record.instance_id} no longer waits on it"
                )
                return None

            for topic, topic_record in record.progress.received.items():
                waiting.progress.received.setdefault(topic, topic_record)
            waiting.progress.timeout_at = record.progress.timeout_at
            report.barriers_timed_out += 1
            return await self._timeout_barrier(instance, waiting)

    async def _reconcile_task(self, task: Task, report: TimeoutSweepReport) -> Optional[EngineResult]:
        async with self._locks.hold(task.workflow_instance_id):
            instance = self._instances.get(task.workflow_instance_id)
            waiting = instance.waiting if instance else None
            if not isinstance(waiting, HumanFormWaiting) or waiting.task.id != task.id:
                report.skipped += 1
                logger.warning(
                    f"Skipping expired task {task.id}: instance {task.workflow_instance_id} "
                    f"no longer waits on it"
                )
                return None
            report.tasks_expired += 1
            return await self._expire_form(instance, waiting)

    async def _sweep_instance(
        self,
        instance_id: str,
        now: datetime,
        report: TimeoutSweepReport,
    ) -> Optional[EngineResult]:
        instance = self._instances.get(instance_id)
        if instance is None or instance.waiting is None:
            return None

        async with self._locks.hold(instance_id):
            instance = self._instances.get(instance_id)
            waiting = instance.waiting if instance else None

            match waiting:
                case BarrierWaiting() if waiting.progress.is_expired(now):
                    report.barriers_timed_out += 1
                    return await self._timeout_barrier(instance, waiting)
                case WaitEventWaiting() if waiting.registration.is_expired(now):
                    report.waits_timed_out += 1
                    return await self._timeout_wait(instance, waiting)
                case HumanFormWaiting() if waiting.task.is_expired(now):
                    report.tasks_expired += 1
                    return await self._expire_form(instance, waiting)
                case _:
                    return None

    async def _timeout_barrier(self, instance: InstanceState, waiting: BarrierWaiting) -> EngineResult:
        self._clear_barrier_index(waiting)
        waiting.progress.completed = True
        waiting.progress.passed = False
        _bucket(instance.context, "barriers")[waiting.node.id] = {"progress": _dump_progress(waiting.progress)}

        await self.storage.save_barrier(instance.id, waiting.node.id, waiting.key, waiting.progress)
        await self._close_run(instance, waiting.handle, NodeRunStatus.FAILED)
        instance.waiting = None
        return await self._resume(
            instance,
            waiting.timeout_to or waiting.fail_to,
            f"barrier {waiting.node.id} timed out",
        )

    async def _timeout_wait(self, instance: InstanceState, waiting: WaitEventWaiting) -> EngineResult:
        index_key = waiting.registration.index_key
        entry = self._wait_index.get(index_key)
        if entry is not None and entry.instance_id == instance.id:
            del self._wait_index[index_key]

        await self._close_run(instance, waiting.handle, NodeRunStatus.FAILED)
        instance.waiting = None
        return await self._resume(instance, waiting.timeout_to, f"event {index_key} timed out")

    async def _expire_form(self, instance: InstanceState, waiting: HumanFormWaiting) -> EngineResult:
        await self.storage.expire_task(waiting.task.id)
        waiting.task.status = TaskStatus.EXPIRED
        _bucket(instance.context, "forms")[waiting.node.id] = {
            "status": TaskStatus.EXPIRED.value,
            "taskId": waiting.task.id,
        }
        await self._close_run(instance, waiting.handle, NodeRunStatus.FAILED)
        instance.waiting = None

        # No implicit fallback: without a TIMEOUT edge the instance fails.
        timeout_edge = instance.flow.pick_edge(waiting.node.id, "TIMEOUT")
        if timeout_edge is not None:
            return await self._resume(instance, timeout_edge.target, f"form {waiting.task.id} expired")

        await self._finish(instance, InstanceStatus.FAILED)
        return self._build_result(instance)
