"""Structural merge node.

A MERGE is a join marker only: it records which branches it joins and
performs no synchronization.
"""

from flow_engine.core.models import JsonObject, MergeNode


def run_merge_node(node: MergeNode) -> JsonObject:
    return {"sources": list(node.sources)}
