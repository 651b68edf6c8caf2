"""
Unit tests for rule-set parsing and flow compilation.
"""

import pytest

from flow_engine.core.compiler import compile_rule_set, parse_rule_set
from flow_engine.core.errors import ConfigurationError
from flow_engine.core.models import (
    BarrierNode,
    ExprNode,
    HumanFormNode,
    RuleSet,
    TableNode,
    WaitEventNode,
)


def _rule_set(nodes, edges=None, entry="a", tables=None):
    return {
        "name": "rs",
        "version": "1",
        "tables": tables or {},
        "flows": {"f": {"name": "f", "entry": entry, "nodes": nodes, "edges": edges or []}},
    }


class TestRuleSetParsing:
    """Tests for parsing raw rule-set documents."""

    def test_parse_discriminates_node_types(self, sample_rule_set):
        """Test that each node type parses into its own model."""
        rule_set = parse_rule_set(sample_rule_set)

        screening = {node.id: node for node in rule_set.flows["screening"].nodes}
        assert isinstance(screening["risk"], TableNode)
        assert isinstance(screening["is_high"], ExprNode)

        review = rule_set.flows["review"].nodes[0]
        assert isinstance(review, HumanFormNode)
        assert review.form_schema_ref == "kyc.review"
        assert review.assignees == ["alice", "bob"]

        wait = rule_set.flows["payment"].nodes[0]
        assert isinstance(wait, WaitEventNode)
        assert wait.correlate_by == "$.orderId"
        assert wait.on_timeout == "unpaid"

        gate = rule_set.flows["checks"].nodes[0]
        assert isinstance(gate, BarrierNode)
        assert gate.barrier.emit_merged is True
        assert gate.barrier.inputs[0].schema_ref == "check.result"

    def test_engine_key(self, sample_rule_set):
        """Test that the engine key combines name and version."""
        assert parse_rule_set(sample_rule_set).engine_key == "onboarding@1.0.0"

    def test_parse_passes_through_rule_set(self, sample_rule_set):
        """Test that an already parsed RuleSet is returned as is."""
        rule_set = RuleSet.model_validate(sample_rule_set)
        assert parse_rule_set(rule_set) is rule_set

    def test_unknown_node_type_rejected(self):
        """Test that an unknown node type is a configuration error."""
        document = _rule_set([{"id": "a", "type": "SCRIPT"}])
        with pytest.raises(ConfigurationError):
            parse_rule_set(document)

    def test_unrooted_condition_path_rejected(self):
        """Test that table condition paths must start with '$.'."""
        tables = {
            "t": {
                "name": "t",
                "hitPolicy": "FIRST",
                "rules": [{"when": [{"path": "amount", "op": ">", "value": 1}], "result": {}}],
            }
        }
        with pytest.raises(ConfigurationError):
            parse_rule_set(_rule_set([{"id": "a", "type": "TABLE", "tableRef": "t"}], tables=tables))

    def test_invalid_matches_pattern_rejected(self):
        """Test that a MATCHES regex is compiled at registration."""
        tables = {
            "t": {
                "name": "t",
                "hitPolicy": "FIRST",
                "rules": [{"when": [{"path": "$.name", "op": "MATCHES", "value": "(unclosed"}]}],
            }
        }
        with pytest.raises(ConfigurationError, match="MATCHES"):
            parse_rule_set(_rule_set([{"id": "a", "type": "TABLE", "tableRef": "t"}], tables=tables))

    def test_quorum_barrier_requires_quorum(self):
        """Test that a QUORUM barrier without a positive quorum is rejected."""
        node = {
            "id": "a",
            "type": "BARRIER",
            "barrier": {"mode": "QUORUM", "inputs": [{"topic": "x"}], "correlateBy": "$.k"},
        }
        with pytest.raises(ConfigurationError):
            parse_rule_set(_rule_set([node]))

    def test_duplicate_barrier_topics_rejected(self):
        """Test that a barrier may list each topic once."""
        node = {
            "id": "a",
            "type": "BARRIER",
            "barrier": {"mode": "ALL", "inputs": [{"topic": "x"}, {"topic": "x"}], "correlateBy": "$.k"},
        }
        with pytest.raises(ConfigurationError):
            parse_rule_set(_rule_set([node]))

    def test_wait_correlate_by_must_be_rooted(self):
        """Test that WAIT_EVENT correlation paths must start with '$.'."""
        node = {"id": "a", "type": "WAIT_EVENT", "topic": "t", "correlateBy": "orderId"}
        with pytest.raises(ConfigurationError):
            parse_rule_set(_rule_set([node]))


class TestFlowCompiler:
    """Tests for flow validation and indexing."""

    def test_compile_indexes_nodes_and_edges(self, sample_rule_set):
        """Test that compiled flows expose node and adjacency lookups."""
        compiled = compile_rule_set(sample_rule_set)
        flow = compiled.flows["screening"]

        assert flow.entry == "risk"
        assert flow.get_node("is_high").id == "is_high"
        assert flow.get_node("missing") is None
        assert [edge.target for edge in flow.edges_from("risk")] == ["is_high", "auto"]
        assert flow.edges_from("manual") == []

    def test_pick_edge_prefers_labels_in_order(self):
        """Test that pick_edge tries labels in the order given."""
        nodes = [
            {"id": "a", "type": "MERGE"},
            {"id": "b", "type": "MERGE"},
            {"id": "c", "type": "MERGE"},
        ]
        edges = [{"from": "a", "to": "b", "on": "resume"}, {"from": "a", "to": "c", "on": "EVENT"}]
        flow = compile_rule_set(_rule_set(nodes, edges)).flows["f"]

        assert flow.pick_edge("a", "EVENT", "RESUME").target == "c"
        assert flow.pick_edge("a", "RESUME").target == "b"
        assert flow.pick_edge("a", "TIMEOUT") is None

    def test_schema_refs_collected(self, sample_rule_set):
        """Test that every schema reference used by a node is collected."""
        compiled = compile_rule_set(sample_rule_set)
        assert compiled.schema_refs == {"kyc.review", "payment.confirmed", "check.result"}

    def test_duplicate_node_ids(self):
        """Test that duplicate node ids are rejected."""
        nodes = [{"id": "a", "type": "MERGE"}, {"id": "a", "type": "MERGE"}]
        with pytest.raises(ConfigurationError, match="Duplicate node id"):
            compile_rule_set(_rule_set(nodes))

    def test_missing_entry(self):
        """Test that the entry must be a declared node."""
        with pytest.raises(ConfigurationError, match="missing entry"):
            compile_rule_set(_rule_set([{"id": "a", "type": "MERGE"}], entry="zzz"))

    def test_edge_to_unknown_node(self):
        """Test that edges must connect declared nodes."""
        edges = [{"from": "a", "to": "ghost"}]
        with pytest.raises(ConfigurationError, match="unknown node"):
            compile_rule_set(_rule_set([{"id": "a", "type": "MERGE"}], edges))

    def test_unknown_table_reference(self):
        """Test that TABLE nodes must reference a declared table."""
        with pytest.raises(ConfigurationError, match="unknown decision table"):
            compile_rule_set(_rule_set([{"id": "a", "type": "TABLE", "tableRef": "nope"}]))

    def test_unknown_next_target(self):
        """Test that next and onTimeout targets must be declared nodes."""
        nodes = [{"id": "a", "type": "MERGE", "next": "ghost"}]
        with pytest.raises(ConfigurationError, match="not a declared node"):
            compile_rule_set(_rule_set(nodes))

        wait = {"id": "a", "type": "WAIT_EVENT", "topic": "t", "correlateBy": "$.k", "onTimeout": "ghost"}
        with pytest.raises(ConfigurationError, match="onTimeout"):
            compile_rule_set(_rule_set([wait]))

    def test_error_reports_flow_name(self):
        """Test that compilation errors carry the offending flow."""
        with pytest.raises(ConfigurationError) as exc_info:
            compile_rule_set(_rule_set([{"id": "a", "type": "MERGE"}], entry="zzz"))
        assert exc_info.value.flow == "f"
