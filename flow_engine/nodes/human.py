"""Human form node: opens a task and waits for its submission."""

import copy
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from flow_engine.core.models import HumanFormNode, JsonObject, Task, TaskDraft, utcnow
from flow_engine.core.state_machine import TaskStatus

if TYPE_CHECKING:
    from flow_engine.storage.base import EngineStorage


def task_expiry(node: HumanFormNode, now: Optional[datetime] = None) -> Optional[datetime]:
    if not node.timeout_ms:
        return None
    return (now or utcnow()) + timedelta(milliseconds=node.timeout_ms)


async def create_human_task(
    storage: "EngineStorage",
    instance_id: str,
    node: HumanFormNode,
    context: JsonObject,
    now: Optional[datetime] = None,
) -> Task:
    """Persist an OPEN task for the node, expiring after its timeout if set."""
    draft = TaskDraft(
        workflow_instance_id=instance_id,
        node_id=node.id,
        form_schema_ref=node.form_schema_ref,
        status=TaskStatus.OPEN,
        assignees=list(node.assignees),
        context=copy.deepcopy(context),
        expires_at=task_expiry(node, now),
    )
    return await storage.create_task(draft)
