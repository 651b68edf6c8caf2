"""
Routing across loaded rule sets.

The manager owns one Engine per rule-set version and decides which engine
serves a flow name, a task or an instance.
"""

import copy
import logging
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel

from flow_engine.core.compiler import compile_rule_set, parse_rule_set
from flow_engine.core.errors import NotFoundError
from flow_engine.core.models import (
    EngineResult,
    FlowDefinition,
    IgnoredEvent,
    InstanceSnapshot,
    JsonObject,
    RuleSet,
    Task,
    utcnow,
)
from flow_engine.expressions.logic import ExpressionEvaluator
from flow_engine.orchestrator.engine import Engine, TimeoutSweepReport, close_orphaned_records
from flow_engine.storage.base import EngineStorage
from flow_engine.validation.schemas import SchemaValidator

logger = logging.getLogger(__name__)


class RegisteredRuleSet(BaseModel):
    rule_set: str
    version: str
    flows: list[str]


class FlowSummary(BaseModel):
    name: str
    rule_set: dict[str, str]


class FlowDescription(BaseModel):
    name: str
    rule_set: dict[str, str]
    definition: FlowDefinition


class EngineManager:
    """
    Routes operations to the engine that owns a flow or instance.

    Flow names map to the most recently registered rule set that declares
    them. Live instances map to the engine that started them; the mapping
    is dropped as soon as an instance reaches a terminal status.
    """

    def __init__(
        self,
        storage: EngineStorage,
        schemas: SchemaValidator,
        evaluator: ExpressionEvaluator,
    ):
        self.storage = storage
        self.schemas = schemas
        self.evaluator = evaluator
        self.engines: dict[str, Engine] = {}
        self.flow_to_engine: dict[str, str] = {}
        self.instance_to_engine: dict[str, str] = {}

    # ==================== Rule Sets ====================

    def register_rule_set(self, document: Union[RuleSet, dict[str, Any]]) -> RegisteredRuleSet:
        """
        Compile a rule set and route its flows to a new engine.

        Raises:
            ConfigurationError: If the rule set, its flows or its schemas are invalid
        """
        rule_set = parse_rule_set(document)
        for ref, schema in rule_set.schemas.items():
            self.schemas.register(ref, schema)

        compiled = compile_rule_set(rule_set)
        engine = Engine(
            compiled,
            self.storage,
            self.schemas,
            self.evaluator,
            reconcile_orphans=False,
        )
        engine_key = engine.engine_key

        previous = self.engines.get(engine_key)
        if previous is not None and previous.live_instance_count:
            logger.warning(
                f"Re-registering {engine_key} drops {previous.live_instance_count} live instances"
            )
        for flow_name in [name for name, key in self.flow_to_engine.items() if key == engine_key]:
            del self.flow_to_engine[flow_name]

        self.engines[engine_key] = engine
        flows = engine.list_flows()
        for flow_name in flows:
            self.flow_to_engine[flow_name] = engine_key

        logger.info(f"Registered rule set {engine_key} with flows {flows}")
        return RegisteredRuleSet(rule_set=rule_set.name, version=rule_set.version, flows=flows)

    def list_flows(self) -> list[FlowSummary]:
        summaries = []
        for flow_name, engine_key in self.flow_to_engine.items():
            engine = self.engines.get(engine_key)
            if engine is None:
                continue
            summaries.append(FlowSummary(name=flow_name, rule_set=engine.rule_set_meta))
        return summaries

    def describe_flow(self, flow_name: str) -> FlowDescription:
        engine = self._engine_for_flow(flow_name)
        return FlowDescription(
            name=flow_name,
            rule_set=engine.rule_set_meta,
            definition=copy.deepcopy(engine.get_flow_definition(flow_name)),
        )

    def _engine_for_flow(self, flow_name: str) -> Engine:
        engine_key = self.flow_to_engine.get(flow_name)
        engine = self.engines.get(engine_key) if engine_key else None
        if engine is None:
            raise NotFoundError("Flow", flow_name, f"Flow '{flow_name}' is not registered")
        return engine

    def _engine_for_instance(self, instance_id: str) -> tuple[str, Engine]:
        engine_key = self.instance_to_engine.get(instance_id)
        if engine_key is not None and engine_key in self.engines:
            return engine_key, self.engines[engine_key]
        for key, engine in self.engines.items():
            if engine.knows_instance(instance_id):
                if engine.is_loaded(instance_id):
                    self.instance_to_engine[instance_id] = key
                return key, engine
        raise NotFoundError("Instance", instance_id, f"Instance '{instance_id}' is not loaded")

    def _track(self, engine_key: str, result: EngineResult) -> None:
        if result.is_terminal:
            self.instance_to_engine.pop(result.instance_id, None)
        else:
            self.instance_to_engine[result.instance_id] = engine_key

    # ==================== Instances ====================

    async def start_instance(self, flow_name: str, input: Optional[JsonObject] = None) -> EngineResult:
        engine = self._engine_for_flow(flow_name)
        result = await engine.start_instance(flow_name, input)
        self._track(engine.engine_key, result)
        return result

    async def resume_with_form(self, task_id: str, payload: JsonObject) -> EngineResult:
        task = await self.storage.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        engine_key, engine = self._engine_for_instance(task.workflow_instance_id)
        result = await engine.resume_with_form(task_id, payload)
        self._track(engine_key, result)
        return result

    async def notify_event(
        self,
        topic: str,
        key: str,
        payload: JsonObject,
    ) -> Union[EngineResult, IgnoredEvent]:
        """Offer the event to each engine; the first that does not ignore it wins."""
        for engine_key, engine in list(self.engines.items()):
            result = await engine.notify_event(topic, key, payload)
            if isinstance(result, IgnoredEvent):
                continue
            self._track(engine_key, result)
            return result
        return IgnoredEvent(topic=topic, key=key)

    def get_instance_status(self, instance_id: str) -> InstanceSnapshot:
        _, engine = self._engine_for_instance(instance_id)
        return engine.get_instance_status(instance_id)

    async def list_tasks(self, assignee: str) -> list[Task]:
        return await self.storage.list_tasks_by_assignee(assignee)

    # ==================== Timeouts ====================

    def is_loaded(self, instance_id: str) -> bool:
        return any(engine.is_loaded(instance_id) for engine in self.engines.values())

    async def process_timeouts(self, now: Optional[datetime] = None) -> TimeoutSweepReport:
        """Sweep every engine, then close orphaned records no engine holds."""
        now = now or utcnow()
        report = TimeoutSweepReport()

        for engine_key, engine in list(self.engines.items()):
            engine_report = await engine.process_timeouts(now)
            for result in engine_report.results:
                self._track(engine_key, result)
            report.merge(engine_report)

        report.merge(await close_orphaned_records(self.storage, now, self.is_loaded))
        return report
