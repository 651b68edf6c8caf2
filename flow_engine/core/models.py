"""
Domain models for the flow engine.

Rule-set documents use camelCase keys (``tableRef``, ``correlateBy``); the
models expose snake_case attributes and accept either spelling. All models
use Pydantic for validation and serialization.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import ulid
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flow_engine.core.paths import is_rooted_path
from flow_engine.core.state_machine import InstanceStatus, TaskStatus

JsonObject = dict[str, Any]


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Unique id that sorts by creation time."""
    return str(ulid.new())


class DocumentModel(BaseModel):
    """Base for models parsed from rule-set documents."""

    model_config = ConfigDict(populate_by_name=True)


# ==================== Decision Tables ====================


class TableOperator(str, Enum):
    """Supported predicate operators for decision-table conditions."""

    EQ = "=="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "IN"
    NOT_IN = "NOT_IN"
    MATCHES = "MATCHES"
    EXISTS = "EXISTS"


class HitPolicy(str, Enum):
    """How a decision table resolves multiple matching rules."""

    FIRST = "FIRST"
    PRIORITY = "PRIORITY"
    MERGE = "MERGE"


class TableCondition(DocumentModel):
    """A single comparison inside a rule predicate."""

    path: str = Field(..., min_length=3, description="Root-anchored context path")
    op: TableOperator
    value: Any = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Paths must be anchored at the context root."""
        if not is_rooted_path(v):
            raise ValueError(f"Condition path '{v}' must start with '$.'")
        return v

    @model_validator(mode="after")
    def validate_pattern(self) -> "TableCondition":
        """MATCHES patterns are compiled up front so bad regexes fail at registration."""
        if self.op == TableOperator.MATCHES:
            if not isinstance(self.value, str):
                raise ValueError("MATCHES conditions require a string pattern")
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"Invalid MATCHES pattern '{self.value}': {e}") from None
        return self


class TableRule(DocumentModel):
    """AND-of-comparisons predicate with its result document."""

    when: list[TableCondition] = Field(default_factory=list)
    result: JsonObject = Field(default_factory=dict)
    priority: Optional[int] = None


class DecisionTable(DocumentModel):
    """Named rule list evaluated under a hit policy."""

    name: str
    hit_policy: HitPolicy = Field(..., alias="hitPolicy")
    rules: list[TableRule] = Field(..., min_length=1)


# ==================== Flow Nodes ====================


class NodeType(str, Enum):
    """The six node kinds a flow can contain."""

    TABLE = "TABLE"
    EXPR = "EXPR"
    MERGE = "MERGE"
    HUMAN_FORM = "HUMAN_FORM"
    WAIT_EVENT = "WAIT_EVENT"
    BARRIER = "BARRIER"


SUSPENDING_NODE_TYPES = {NodeType.HUMAN_FORM, NodeType.WAIT_EVENT, NodeType.BARRIER}


class BaseFlowNode(DocumentModel):
    """Fields shared by every node kind."""

    id: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = None
    next: Optional[str] = Field(default=None, description="Unconditional successor")

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)  # type: ignore[attr-defined]

    @property
    def suspends(self) -> bool:
        """Whether visiting this node suspends the instance."""
        return self.node_type in SUSPENDING_NODE_TYPES


class TableNode(BaseFlowNode):
    type: Literal["TABLE"] = "TABLE"
    table_ref: str = Field(..., alias="tableRef")
    on_fail: Optional[str] = Field(default=None, alias="onFail")


class ExprNode(BaseFlowNode):
    type: Literal["EXPR"] = "EXPR"
    expr: Any
    on_true: Optional[str] = Field(default=None, alias="onTrue")
    on_false: Optional[str] = Field(default=None, alias="onFalse")


class MergeNode(BaseFlowNode):
    type: Literal["MERGE"] = "MERGE"
    sources: list[str] = Field(default_factory=list)


class HumanFormNode(BaseFlowNode):
    type: Literal["HUMAN_FORM"] = "HUMAN_FORM"
    form_schema_ref: str = Field(..., alias="formSchemaRef")
    assignees: list[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs")


class WaitEventNode(BaseFlowNode):
    type: Literal["WAIT_EVENT"] = "WAIT_EVENT"
    topic: str = Field(..., min_length=1)
    correlate_by: str = Field(..., alias="correlateBy")
    schema_ref: Optional[str] = Field(default=None, alias="schemaRef")
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs")
    on_timeout: Optional[str] = Field(default=None, alias="onTimeout")

    @field_validator("correlate_by")
    @classmethod
    def validate_correlate_by(cls, v: str) -> str:
        if not is_rooted_path(v):
            raise ValueError(f"correlateBy '{v}' must start with '$.'")
        return v


class BarrierMode(str, Enum):
    """Quorum semantics for a barrier."""

    ALL = "ALL"
    ANY = "ANY"
    QUORUM = "QUORUM"


class BarrierInput(DocumentModel):
    """One expected topic of a barrier."""

    topic: str = Field(..., min_length=1)
    schema_ref: Optional[str] = Field(default=None, alias="schemaRef")
    pass_expr: Any = Field(default=None, alias="passExpr")


class BarrierDef(DocumentModel):
    """Barrier configuration."""

    mode: BarrierMode
    quorum: Optional[int] = None
    inputs: list[BarrierInput] = Field(..., min_length=1)
    correlate_by: str = Field(..., alias="correlateBy")
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs")
    on_fail: Optional[str] = Field(default=None, alias="onFail")
    emit_merged: bool = Field(default=False, alias="emitMerged")

    @field_validator("correlate_by")
    @classmethod
    def validate_correlate_by(cls, v: str) -> str:
        if not is_rooted_path(v):
            raise ValueError(f"correlateBy '{v}' must start with '$.'")
        return v

    @field_validator("inputs")
    @classmethod
    def validate_unique_topics(cls, v: list[BarrierInput]) -> list[BarrierInput]:
        """Each topic may appear once; the barrier index is keyed by topic."""
        topics = [item.topic for item in v]
        if len(topics) != len(set(topics)):
            duplicates = {t for t in topics if topics.count(t) > 1}
            raise ValueError(f"Duplicate barrier topics: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_quorum(self) -> "BarrierDef":
        if self.mode == BarrierMode.QUORUM and (self.quorum is None or self.quorum <= 0):
            raise ValueError("QUORUM barriers require quorum > 0")
        return self

    def find_input(self, topic: str) -> Optional[BarrierInput]:
        for item in self.inputs:
            if item.topic == topic:
                return item
        return None


class BarrierNode(BaseFlowNode):
    type: Literal["BARRIER"] = "BARRIER"
    barrier: BarrierDef


FlowNode = Annotated[
    Union[TableNode, ExprNode, MergeNode, HumanFormNode, WaitEventNode, BarrierNode],
    Field(discriminator="type"),
]


# ==================== Flows & Rule Sets ====================


class FlowEdge(DocumentModel):
    """Directed, optionally labeled edge between two nodes."""

    source: str = Field(..., alias="from")
    target: str = Field(..., alias="to")
    on: Optional[str] = None

    def has_label(self, label: str) -> bool:
        return (self.on or "").upper() == label.upper()


class FlowDefinition(DocumentModel):
    """A named directed graph of typed nodes with a designated entry."""

    name: str = Field(..., min_length=1)
    entry: str = Field(..., min_length=1)
    nodes: list[FlowNode] = Field(..., min_length=1)
    edges: list[FlowEdge] = Field(default_factory=list)


class RuleSet(DocumentModel):
    """Versioned bundle of schemas, decision tables and flows."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    schemas: dict[str, JsonObject] = Field(default_factory=dict)
    tables: dict[str, DecisionTable] = Field(default_factory=dict)
    flows: dict[str, FlowDefinition]

    @property
    def engine_key(self) -> str:
        return f"{self.name}@{self.version}"


# ==================== Runtime Records ====================


class TaskDraft(BaseModel):
    """Fields supplied by the engine when it opens a human task."""

    workflow_instance_id: str
    node_id: str
    form_schema_ref: str
    status: TaskStatus = TaskStatus.OPEN
    assignees: list[str] = Field(default_factory=list)
    context: JsonObject = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class Task(TaskDraft):
    """A human-form task as stored by persistence."""

    id: str
    created_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    payload: Optional[JsonObject] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class BarrierTopicRecord(BaseModel):
    """Outcome reported for one barrier topic."""

    model_config = ConfigDict(populate_by_name=True)

    topic: str
    passed: bool = Field(..., alias="pass")
    payload: Optional[JsonObject] = None
    started_at: datetime
    ended_at: datetime

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


class BarrierProgress(BaseModel):
    """Live state of one barrier wait."""

    node_id: str
    instance_id: str
    key: str
    mode: BarrierMode
    quorum: Optional[int] = None
    expected_topics: list[str]
    received: dict[str, BarrierTopicRecord] = Field(default_factory=dict)
    completed: bool = False
    passed: bool = False
    emit_merged: bool = False
    timeout_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.timeout_at is not None and self.timeout_at <= now


class ExecutionMetrics(BaseModel):
    """Rolling timing totals for an instance, in milliseconds."""

    wall_ms_total: int = 0
    active_ms_total: int = 0
    waiting_ms_total: int = 0


class WaitingFor(BaseModel):
    """What a suspended instance expects next."""

    type: Literal["EVENT", "BARRIER"]
    topic: str
    key: str


class EngineResult(BaseModel):
    """Outcome of any operation that drives an instance."""

    instance_id: str
    status: InstanceStatus
    metrics: ExecutionMetrics
    pending_task: Optional[Task] = None
    waiting_for: Optional[WaitingFor] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (InstanceStatus.COMPLETED, InstanceStatus.FAILED)


class IgnoredEvent(BaseModel):
    """Event delivery that matched no waiting instance."""

    status: Literal["IGNORED"] = "IGNORED"
    topic: str
    key: str


class InstanceSnapshot(BaseModel):
    """Read-only view of a loaded instance."""

    id: str
    flow_name: str
    status: InstanceStatus
    context: JsonObject
    metrics: ExecutionMetrics
