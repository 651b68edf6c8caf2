"""
Durable Flow Engine

A resumable workflow execution engine that interprets declarative rule-set
flows: decision tables, boolean expressions, human forms, external events
and multi-input barriers.
"""

__version__ = "1.0.0"
