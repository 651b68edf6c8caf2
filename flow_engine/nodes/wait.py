"""External event wait node."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flow_engine.core.errors import EngineInvariantError
from flow_engine.core.models import JsonObject, WaitEventNode, utcnow
from flow_engine.core.paths import resolve_path


def correlation_index_key(topic: str, key: str) -> str:
    """Composite key shared by the wait and barrier indices."""
    return f"{topic}::{key}"


@dataclass
class WaitRegistration:
    """What a WAIT_EVENT node is waiting for."""

    topic: str
    key: str
    schema_ref: Optional[str] = None
    timeout_at: Optional[datetime] = None
    on_timeout: Optional[str] = None

    @property
    def index_key(self) -> str:
        return correlation_index_key(self.topic, self.key)

    def is_expired(self, now: datetime) -> bool:
        return self.timeout_at is not None and self.timeout_at <= now


def build_wait_registration(
    node: WaitEventNode,
    context: JsonObject,
    now: Optional[datetime] = None,
) -> WaitRegistration:
    """
    Resolve the correlation key and timeout of a WAIT_EVENT node.

    Raises:
        EngineInvariantError: If the correlation key does not resolve to a string
    """
    key = resolve_path(context, node.correlate_by)
    if not isinstance(key, str):
        raise EngineInvariantError(f"WAIT_EVENT node '{node.id}' could not resolve correlate key")

    timeout_at = None
    if node.timeout_ms:
        timeout_at = (now or utcnow()) + timedelta(milliseconds=node.timeout_ms)

    return WaitRegistration(
        topic=node.topic,
        key=key,
        schema_ref=node.schema_ref,
        timeout_at=timeout_at,
        on_timeout=node.on_timeout,
    )
