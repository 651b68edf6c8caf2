"""HTTP surface of the flow engine."""

from flow_engine.api.app import create_app

__all__ = ["create_app"]
