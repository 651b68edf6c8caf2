"""
Pytest fixtures and configuration for tests.
"""

import copy
from typing import Any, Callable

import pytest

from flow_engine.config import Environment, Settings
from flow_engine.core.compiler import compile_rule_set
from flow_engine.expressions.builtins import create_default_registry
from flow_engine.expressions.logic import ExpressionEvaluator
from flow_engine.expressions.registry import FunctionRegistry
from flow_engine.orchestrator.engine import Engine
from flow_engine.storage.memory import MemoryStorage
from flow_engine.validation.schemas import SchemaValidator

REVIEW_SCHEMA = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "comment": {"type": "string"},
    },
    "required": ["approved"],
}

PAYMENT_SCHEMA = {
    "type": "object",
    "properties": {"amount": {"type": "number", "minimum": 0}},
    "required": ["amount"],
}

CHECK_SCHEMA = {
    "type": "object",
    "properties": {"ok": {"type": "boolean"}},
    "required": ["ok"],
}


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
    )


@pytest.fixture
def registry() -> FunctionRegistry:
    return create_default_registry()


@pytest.fixture
def evaluator(registry: FunctionRegistry) -> ExpressionEvaluator:
    return ExpressionEvaluator(registry)


@pytest.fixture
def schemas() -> SchemaValidator:
    return SchemaValidator()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def engine_factory(
    storage: MemoryStorage,
    schemas: SchemaValidator,
    evaluator: ExpressionEvaluator,
) -> Callable[[dict[str, Any]], Engine]:
    """Build an Engine over MemoryStorage, registering the rule set's schemas first."""

    def build(document: dict[str, Any], **kwargs: Any) -> Engine:
        for ref, schema in document.get("schemas", {}).items():
            schemas.register(ref, schema)
        return Engine(compile_rule_set(document), storage, schemas, evaluator, **kwargs)

    return build


def build_barrier_rule_set(
    mode: str = "ALL",
    topics: tuple[str, ...] = ("a", "b"),
    quorum: int | None = None,
    timeout_ms: int | None = None,
    pass_exprs: dict[str, Any] | None = None,
    emit_merged: bool = False,
    with_fail_branch: bool = True,
) -> dict[str, Any]:
    """Rule set whose single flow starts at a BARRIER keyed by user.id."""
    barrier: dict[str, Any] = {
        "mode": mode,
        "inputs": [
            {"topic": topic, **({"passExpr": pass_exprs[topic]} if pass_exprs and topic in pass_exprs else {})}
            for topic in topics
        ],
        "correlateBy": "$.user.id",
        "emitMerged": emit_merged,
    }
    if quorum is not None:
        barrier["quorum"] = quorum
    if timeout_ms is not None:
        barrier["timeoutMs"] = timeout_ms

    nodes: list[dict[str, Any]] = [
        {"id": "gate", "type": "BARRIER", "barrier": barrier},
        {"id": "accepted", "type": "MERGE", "sources": ["gate"]},
    ]
    edges = [{"from": "gate", "to": "accepted", "on": "PASS"}]
    if with_fail_branch:
        nodes.append({"id": "rejected", "type": "MERGE", "sources": ["gate"]})
        edges.append({"from": "gate", "to": "rejected", "on": "FAIL"})
        edges.append({"from": "gate", "to": "rejected", "on": "TIMEOUT"})

    return {
        "name": "barriers",
        "version": "1",
        "flows": {"gate": {"name": "gate", "entry": "gate", "nodes": nodes, "edges": edges}},
    }


@pytest.fixture
def sample_rule_set() -> dict[str, Any]:
    """Rule set covering every node kind."""
    document = {
        "name": "onboarding",
        "version": "1.0.0",
        "schemas": {
            "kyc.review": REVIEW_SCHEMA,
            "payment.confirmed": PAYMENT_SCHEMA,
            "check.result": CHECK_SCHEMA,
        },
        "tables": {
            "risk": {
                "name": "risk",
                "hitPolicy": "FIRST",
                "rules": [
                    {
                        "when": [{"path": "$.user.country", "op": "IN", "value": ["XX", "YY"]}],
                        "result": {"tier": "high"},
                    },
                    {
                        "when": [{"path": "$.amount", "op": ">", "value": 1000}],
                        "result": {"tier": "medium"},
                    },
                ],
            },
        },
        "flows": {
            "screening": {
                "name": "screening",
                "entry": "risk",
                "nodes": [
                    {"id": "risk", "type": "TABLE", "tableRef": "risk"},
                    {
                        "id": "is_high",
                        "type": "EXPR",
                        "expr": {"==": [{"var": "decisions.risk.result.tier"}, "high"]},
                    },
                    {"id": "manual", "type": "MERGE", "sources": ["is_high"]},
                    {"id": "auto", "type": "MERGE", "sources": ["risk", "is_high"]},
                ],
                "edges": [
                    {"from": "risk", "to": "is_high", "on": "MATCH"},
                    {"from": "risk", "to": "auto", "on": "NO_MATCH"},
                    {"from": "is_high", "to": "manual", "on": "TRUE"},
                    {"from": "is_high", "to": "auto", "on": "FALSE"},
                ],
            },
            "review": {
                "name": "review",
                "entry": "form",
                "nodes": [
                    {
                        "id": "form",
                        "type": "HUMAN_FORM",
                        "formSchemaRef": "kyc.review",
                        "assignees": ["alice", "bob"],
                        "next": "done",
                    },
                    {"id": "done", "type": "MERGE", "sources": ["form"]},
                ],
                "edges": [],
            },
            "review_with_deadline": {
                "name": "review_with_deadline",
                "entry": "form",
                "nodes": [
                    {
                        "id": "form",
                        "type": "HUMAN_FORM",
                        "formSchemaRef": "kyc.review",
                        "assignees": ["alice"],
                        "timeoutMs": 60000,
                    },
                    {"id": "approved", "type": "MERGE"},
                    {"id": "escalated", "type": "MERGE"},
                ],
                "edges": [
                    {"from": "form", "to": "approved", "on": "SUBMIT"},
                    {"from": "form", "to": "escalated", "on": "TIMEOUT"},
                ],
            },
            "review_strict": {
                "name": "review_strict",
                "entry": "form",
                "nodes": [
                    {
                        "id": "form",
                        "type": "HUMAN_FORM",
                        "formSchemaRef": "kyc.review",
                        "assignees": ["carol"],
                        "timeoutMs": 60000,
                        "next": "done",
                    },
                    {"id": "done", "type": "MERGE"},
                ],
                "edges": [],
            },
            "payment": {
                "name": "payment",
                "entry": "wait",
                "nodes": [
                    {
                        "id": "wait",
                        "type": "WAIT_EVENT",
                        "topic": "payment.confirmed",
                        "correlateBy": "$.orderId",
                        "schemaRef": "payment.confirmed",
                        "timeoutMs": 60000,
                        "onTimeout": "unpaid",
                        "next": "paid",
                    },
                    {"id": "paid", "type": "MERGE"},
                    {"id": "unpaid", "type": "MERGE"},
                ],
                "edges": [],
            },
            "checks": {
                "name": "checks",
                "entry": "gate",
                "nodes": [
                    {
                        "id": "gate",
                        "type": "BARRIER",
                        "barrier": {
                            "mode": "ALL",
                            "inputs": [
                                {
                                    "topic": "check.id",
                                    "schemaRef": "check.result",
                                    "passExpr": {"==": [{"var": "event.ok"}, True]},
                                },
                                {"topic": "check.address"},
                            ],
                            "correlateBy": "$.applicantId",
                            "timeoutMs": 60000,
                            "onFail": "rejected",
                            "emitMerged": True,
                        },
                        "next": "accepted",
                    },
                    {"id": "accepted", "type": "MERGE"},
                    {"id": "rejected", "type": "MERGE"},
                ],
                "edges": [],
            },
        },
    }
    return copy.deepcopy(document)


@pytest.fixture
def barrier_rule_set() -> Callable[..., dict[str, Any]]:
    """Factory for single-barrier rule sets."""
    return build_barrier_rule_set
