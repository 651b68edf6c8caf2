"""
Flow compilation: validation and indexing of rule-set flows.

Builds the node-by-id and adjacency maps the engine needs for O(1) lookups
and rejects malformed flows before any instance can start.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from flow_engine.core.errors import ConfigurationError
from flow_engine.core.models import (
    BarrierNode,
    DecisionTable,
    ExprNode,
    FlowDefinition,
    FlowEdge,
    FlowNode,
    HumanFormNode,
    RuleSet,
    TableNode,
    WaitEventNode,
)


@dataclass
class CompilationIssue:
    """Represents a single compilation problem."""

    code: str
    message: str
    flow: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompilationResult:
    """Result of compiling one flow."""

    is_valid: bool = True
    errors: list[CompilationIssue] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        flow: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a compilation error."""
        self.errors.append(CompilationIssue(code, message, flow, details))
        self.is_valid = False

    def raise_for_errors(self) -> None:
        if not self.is_valid:
            first = self.errors[0]
            raise ConfigurationError(first.message, flow=first.flow)


@dataclass
class CompiledFlow:
    """A flow definition with its lookup structures."""

    definition: FlowDefinition
    nodes_by_id: dict[str, FlowNode]
    adjacency: dict[str, list[FlowEdge]]
    schema_refs: set[str] = field(default_factory=set)

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def entry(self) -> str:
        return self.definition.entry

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        return self.nodes_by_id.get(node_id)

    def edges_from(self, node_id: str) -> list[FlowEdge]:
        return self.adjacency.get(node_id, [])

    def pick_edge(self, node_id: str, *labels: str) -> Optional[FlowEdge]:
        """
        Return the first edge from node_id whose label matches.

        Labels are tried in order, so pick_edge(n, "EVENT", "RESUME")
        prefers an EVENT edge over a RESUME edge.
        """
        edges = self.edges_from(node_id)
        for label in labels:
            for edge in edges:
                if edge.has_label(label):
                    return edge
        return None


@dataclass
class CompiledRuleSet:
    """All compiled flows and indexed tables of a rule set."""

    rule_set: RuleSet
    flows: dict[str, CompiledFlow]
    tables: dict[str, DecisionTable]

    @property
    def schema_refs(self) -> set[str]:
        refs: set[str] = set()
        for flow in self.flows.values():
            refs |= flow.schema_refs
        return refs


class FlowCompiler:
    """
    Validates and indexes a single flow definition.

    Checks performed:
    - node ids are unique
    - the entry node exists
    - every edge endpoint resolves to a declared node
    - every TABLE node references a declared decision table
    - every next/onFail/onTrue/onFalse/onTimeout target is a declared node
    """

    def __init__(self, flow: FlowDefinition, tables: dict[str, DecisionTable]):
        self.flow = flow
        self.tables = tables
        self._nodes_by_id: dict[str, FlowNode] = {}
        self._adjacency: dict[str, list[FlowEdge]] = defaultdict(list)

    def compile(self) -> tuple[Optional[CompiledFlow], CompilationResult]:
        result = CompilationResult()

        self._index_nodes(result)
        if result.is_valid:
            self._validate_entry(result)
            self._index_edges(result)
            self._validate_table_refs(result)
            self._validate_node_targets(result)

        if not result.is_valid:
            return None, result

        compiled = CompiledFlow(
            definition=self.flow,
            nodes_by_id=dict(self._nodes_by_id),
            adjacency={source: list(edges) for source, edges in self._adjacency.items()},
            schema_refs=self._collect_schema_refs(),
        )
        return compiled, result

    def _index_nodes(self, result: CompilationResult) -> None:
        for node in self.flow.nodes:
            if node.id in self._nodes_by_id:
                result.add_error(
                    code="DUPLICATE_NODE",
                    message=f"Duplicate node id '{node.id}' in flow '{self.flow.name}'",
                    flow=self.flow.name,
                    node_id=node.id,
                )
                continue
            self._nodes_by_id[node.id] = node

    def _validate_entry(self, result: CompilationResult) -> None:
        if self.flow.entry not in self._nodes_by_id:
            result.add_error(
                code="MISSING_ENTRY",
                message=f"Flow '{self.flow.name}' refers to missing entry node '{self.flow.entry}'",
                flow=self.flow.name,
                entry=self.flow.entry,
            )

    def _index_edges(self, result: CompilationResult) -> None:
        for edge in self.flow.edges:
            if edge.source not in self._nodes_by_id or edge.target not in self._nodes_by_id:
                result.add_error(
                    code="INVALID_EDGE",
                    message=(
                        f"Invalid edge in flow '{self.flow.name}': "
                        f"'{edge.source}' -> '{edge.target}' references unknown node"
                    ),
                    flow=self.flow.name,
                    source=edge.source,
                    target=edge.target,
                )
                continue
            self._adjacency[edge.source].append(edge)

    def _validate_table_refs(self, result: CompilationResult) -> None:
        for node in self._nodes_by_id.values():
            if isinstance(node, TableNode) and node.table_ref not in self.tables:
                result.add_error(
                    code="UNKNOWN_TABLE",
                    message=(
                        f"Node '{node.id}' in flow '{self.flow.name}' "
                        f"references unknown decision table '{node.table_ref}'"
                    ),
                    flow=self.flow.name,
                    node_id=node.id,
                )

    def _validate_node_targets(self, result: CompilationResult) -> None:
        for node in self._nodes_by_id.values():
            for field_name, target in _declared_targets(node):
                if target not in self._nodes_by_id:
                    result.add_error(
                        code="UNKNOWN_TARGET",
                        message=(
                            f"Node '{node.id}' in flow '{self.flow.name}' "
                            f"has {field_name} '{target}' which is not a declared node"
                        ),
                        flow=self.flow.name,
                        node_id=node.id,
                    )

    def _collect_schema_refs(self) -> set[str]:
        refs: set[str] = set()
        for node in self._nodes_by_id.values():
            if isinstance(node, HumanFormNode):
                refs.add(node.form_schema_ref)
            elif isinstance(node, WaitEventNode) and node.schema_ref:
                refs.add(node.schema_ref)
            elif isinstance(node, BarrierNode):
                refs.update(i.schema_ref for i in node.barrier.inputs if i.schema_ref)
        return refs


def _declared_targets(node: FlowNode) -> list[tuple[str, str]]:
    """Successor node ids a node declares outside its edges."""
    targets = [("next", node.next)]
    if isinstance(node, TableNode):
        targets.append(("onFail", node.on_fail))
    elif isinstance(node, ExprNode):
        targets += [("onTrue", node.on_true), ("onFalse", node.on_false)]
    elif isinstance(node, WaitEventNode):
        targets.append(("onTimeout", node.on_timeout))
    elif isinstance(node, BarrierNode):
        targets.append(("onFail", node.barrier.on_fail))
    return [(name, target) for name, target in targets if target is not None]


def parse_rule_set(document: Union[RuleSet, dict[str, Any]]) -> RuleSet:
    """
    Parse a raw rule-set document.

    Raises:
        ConfigurationError: If the document does not describe a valid rule set
    """
    if isinstance(document, RuleSet):
        return document
    try:
        return RuleSet.model_validate(document)
    except PydanticValidationError as e:
        raise ConfigurationError(f"RuleSet validation failed: {e}") from None


def compile_rule_set(document: Union[RuleSet, dict[str, Any]]) -> CompiledRuleSet:
    """
    Compile every flow of a rule set.

    Raises:
        ConfigurationError: On the first invalid flow
    """
    rule_set = parse_rule_set(document)
    tables = dict(rule_set.tables)

    flows: dict[str, CompiledFlow] = {}
    for name, flow in rule_set.flows.items():
        compiled, result = FlowCompiler(flow, tables).compile()
        result.raise_for_errors()
        flows[name] = compiled

    return CompiledRuleSet(rule_set=rule_set, flows=flows, tables=tables)
