"""
FastAPI routes for the flow engine API.

Implements the API endpoints:
- POST /rulesets - Register a rule set
- GET /flows, GET /flows/{name} - Inspect registered flows
- POST /workflows/{name}/start - Start an instance
- GET /tasks?assignee= - Open tasks of an assignee
- POST /tasks/{id}/submit - Submit a form
- POST /events/{topic}/{key} - Deliver an external event
- GET /instances/{id} - Instance snapshot
- GET /health - Health check

Request bodies are raw JSON documents. Mutating routes honour an
Idempotency-Key header.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from flow_engine import __version__
from flow_engine.config.settings import Settings
from flow_engine.core.errors import (
    ConfigurationError,
    CorrelationMismatchError,
    FlowEngineError,
    NotFoundError,
    ValidationError,
)
from flow_engine.core.models import Task
from flow_engine.orchestrator.manager import EngineManager
from flow_engine.storage.base import EngineStorage
from flow_engine.storage.postgres.database import Database
from flow_engine.storage.redis.connection import RedisConnection
from flow_engine.util.idempotency import Compute

router = APIRouter(prefix="/v1", tags=["flows"])


class ResponseCache(Protocol):
    async def execute(self, key: Optional[str], compute: Compute) -> Any:
        ...


@dataclass
class AppServices:
    """Everything the routes need, built once by the application lifespan."""

    settings: Settings
    manager: EngineManager
    storage: EngineStorage
    caches: dict[str, ResponseCache]
    database: Optional[Database] = None
    redis: Optional[RedisConnection] = None
    sweeper_running: bool = field(default=False)


class PayloadTooLargeError(FlowEngineError):
    """Request body exceeds the configured limit."""


# ==================== Response Models ====================


class TaskListResponse(BaseModel):
    tasks: list[Task]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================


def get_services(request: Request) -> AppServices:
    """Get the service container from app state."""
    return request.app.state.services


async def read_json_body(request: Request, services: AppServices = Depends(get_services)) -> Any:
    """
    Read the raw body as JSON, enforcing the payload size limit.

    An empty body reads as an empty object.
    """
    limit = services.settings.engine.max_payload_bytes
    length_header = request.headers.get("content-length")
    if length_header and length_header.isdigit() and int(length_header) > limit:
        raise PayloadTooLargeError(f"Payload exceeds {limit} bytes")

    raw = await request.body()
    if len(raw) > limit:
        raise PayloadTooLargeError(f"Payload exceeds {limit} bytes")
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from None


def _require_object(body: Any, what: str) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError(f"{what} must be a JSON object")
    return body


# ==================== Error Mapping ====================


ERROR_STATUS: list[tuple[type[FlowEngineError], int]] = [
    (PayloadTooLargeError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CorrelationMismatchError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
]


def status_for_error(error: FlowEngineError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def flow_engine_error_handler(request: Request, exc: FlowEngineError) -> JSONResponse:
    content: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, ValidationError) and exc.errors:
        content["errors"] = exc.errors
    return JSONResponse(status_code=status_for_error(exc), content=content)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FlowEngineError, flow_engine_error_handler)


# ==================== Rule Sets & Flows ====================


@router.post(
    "/rulesets",
    status_code=status.HTTP_201_CREATED,
    summary="Register a rule set",
    description="Compile a rule-set document and route its flows to a new engine."
)
async def register_rule_set(
    body: Any = Depends(read_json_body),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    registered = services.manager.register_rule_set(_require_object(body, "Rule set"))
    return registered.model_dump(mode="json")


@router.get("/flows", summary="List registered flows")
async def list_flows(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return {"flows": [summary.model_dump(mode="json") for summary in services.manager.list_flows()]}


@router.get("/flows/{name}", summary="Describe a flow")
async def describe_flow(name: str, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    description = services.manager.describe_flow(name)
    return description.model_dump(mode="json", by_alias=True, exclude_none=True)


# ==================== Instances ====================


@router.post(
    "/workflows/{name}/start",
    summary="Start a flow instance",
    description="Start an instance with the request body as its initial context."
)
async def start_workflow(
    name: str,
    body: Any = Depends(read_json_body),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    input_document = _require_object(body, "Workflow input")

    async def compute() -> dict[str, Any]:
        result = await services.manager.start_instance(name, input_document)
        return result.model_dump(mode="json")

    return await services.caches["start"].execute(idempotency_key, compute)


@router.get("/instances/{instance_id}", summary="Get instance status")
async def get_instance(instance_id: str, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    return services.manager.get_instance_status(instance_id).model_dump(mode="json")


# ==================== Tasks ====================


@router.get("/tasks", response_model=TaskListResponse, summary="List open tasks of an assignee")
async def list_tasks(
    assignee: str = Query(..., min_length=1),
    services: AppServices = Depends(get_services),
) -> TaskListResponse:
    return TaskListResponse(tasks=await services.manager.list_tasks(assignee))


@router.post("/tasks/{task_id}/submit", summary="Submit a human form")
async def submit_task(
    task_id: str,
    body: Any = Depends(read_json_body),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    payload = _require_object(body, "Form payload")

    async def compute() -> dict[str, Any]:
        result = await services.manager.resume_with_form(task_id, payload)
        return result.model_dump(mode="json")

    return await services.caches["submit"].execute(idempotency_key, compute)


# ==================== Events ====================


@router.post("/events/{topic}/{key}", summary="Deliver an external event")
async def notify_event(
    topic: str,
    key: str,
    body: Any = Depends(read_json_body),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: AppServices = Depends(get_services),
) -> JSONResponse:
    payload = _require_object(body, "Event payload")

    async def compute() -> dict[str, Any]:
        result = await services.manager.notify_event(topic, key, payload)
        return result.model_dump(mode="json")

    content = await services.caches["event"].execute(idempotency_key, compute)
    if content.get("status") == "IGNORED":
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content)
    return JSONResponse(status_code=status.HTTP_200_OK, content=content)


# ==================== Health Check Routes ====================


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the flow engine services."
)
async def health_check(services: AppServices = Depends(get_services)) -> HealthResponse:
    """Check health of all services."""
    checks = {
        "engines": f"healthy ({len(services.manager.engines)} loaded)",
        "sweeper": "healthy" if services.sweeper_running else "unhealthy",
    }

    if services.database is not None:
        checks["postgres"] = "healthy" if await services.database.ping() else "unhealthy"

    if services.redis is not None:
        checks["redis"] = "healthy" if await services.redis.health_check() else "unhealthy"

    unhealthy_count = sum(1 for s in checks.values() if "unhealthy" in s)
    if unhealthy_count == 0:
        overall_status = "healthy"
    elif unhealthy_count == len(checks):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(status=overall_status, version=__version__, services=checks)
