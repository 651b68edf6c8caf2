"""
FastAPI application factory.

Creates and configures the flow engine API application. The lifespan is
the composition root: it builds storage, schema validator, function
registry, evaluator, manager and idempotency caches, loads the configured
rule sets and runs the periodic timeout sweeper.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flow_engine import __version__
from flow_engine.api.routes import AppServices, ResponseCache, install_error_handlers, router
from flow_engine.config.settings import (
    IdempotencyBackend,
    Settings,
    StorageBackend,
    get_settings,
)
from flow_engine.core.errors import ConfigurationError
from flow_engine.expressions.builtins import create_default_registry
from flow_engine.expressions.logic import ExpressionEvaluator
from flow_engine.orchestrator.manager import EngineManager
from flow_engine.storage import create_storage
from flow_engine.storage.postgres.database import Database
from flow_engine.storage.redis.cache import RedisIdempotencyCache
from flow_engine.storage.redis.connection import RedisConnection
from flow_engine.util.idempotency import IdempotencyCache
from flow_engine.validation.schemas import SchemaValidator

logger = logging.getLogger(__name__)

CACHE_SCOPES = ("start", "submit", "event")


def load_rule_set_file(path: str) -> dict:
    """
    Read a rule-set document from a JSON file.

    Raises:
        ConfigurationError: If the file is missing or not valid JSON
    """
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load rule set from {path}: {e}") from None


async def run_timeout_sweeper(
    manager: EngineManager,
    interval_seconds: float,
    stop: asyncio.Event,
) -> None:
    """Periodically resolve expired waits until stop is set."""
    logger.info(f"Timeout sweeper started (every {interval_seconds}s)")
    while not stop.is_set():
        try:
            await manager.process_timeouts()
        except Exception:
            logger.error("Timeout sweep failed", exc_info=True)

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
    logger.info("Timeout sweeper stopped")


async def build_services(settings: Settings) -> AppServices:
    """Wire the engine stack described by the settings."""
    engine_settings = settings.engine

    database: Optional[Database] = None
    if engine_settings.storage_backend == StorageBackend.POSTGRES:
        database = Database(settings.postgres)
        await database.init()
        logger.info("Database connection established")
    storage = create_storage(settings, database)

    redis_connection: Optional[RedisConnection] = None
    caches: dict[str, ResponseCache]
    if engine_settings.idempotency_backend == IdempotencyBackend.REDIS:
        redis_connection = RedisConnection(settings.redis)
        await redis_connection.init()
        logger.info("Redis connection established")
        caches = {
            scope: RedisIdempotencyCache(
                redis_connection.client,
                scope,
                ttl_seconds=engine_settings.idempotency_ttl_seconds,
            )
            for scope in CACHE_SCOPES
        }
    else:
        caches = {
            scope: IdempotencyCache(ttl_seconds=engine_settings.idempotency_ttl_seconds)
            for scope in CACHE_SCOPES
        }

    schemas = SchemaValidator(max_payload_bytes=engine_settings.max_payload_bytes)
    if engine_settings.schema_bundle_path:
        refs = schemas.register_bundle(engine_settings.schema_bundle_path)
        logger.info(f"Loaded {len(refs)} schemas from {engine_settings.schema_bundle_path}")

    registry = create_default_registry(engine_settings.default_function_budget_ms)
    evaluator = ExpressionEvaluator(registry)
    manager = EngineManager(storage, schemas, evaluator)

    for path in engine_settings.rule_set_paths:
        manager.register_rule_set(load_rule_set_file(path))

    return AppServices(
        settings=settings,
        manager=manager,
        storage=storage,
        caches=caches,
        database=database,
        redis=redis_connection,
    )


async def close_services(services: AppServices) -> None:
    if services.database is not None:
        await services.database.close()
    if services.redis is not None:
        await services.redis.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info("Starting Durable Flow Engine...")
    services = await build_services(settings)
    app.state.services = services

    stop = asyncio.Event()
    sweeper = asyncio.create_task(
        run_timeout_sweeper(services.manager, settings.engine.sweep_interval_seconds, stop)
    )
    services.sweeper_running = True

    logger.info(
        f"Flow Engine started - Environment: {settings.environment.value}, "
        f"storage: {settings.engine.storage_backend.value}"
    )

    try:
        yield
    finally:
        # Shutdown
        logger.info("Shutting down Durable Flow Engine...")
        stop.set()
        services.sweeper_running = False
        try:
            await asyncio.wait_for(sweeper, timeout=settings.engine.sweep_interval_seconds + 5)
        except asyncio.TimeoutError:
            logger.warning("Timeout sweeper did not stop in time, cancelling")
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper

        await close_services(services)
        logger.info("Flow Engine shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.
    """
    settings = settings or get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Durable workflow engine for forms, events and barriers",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app)
    app.include_router(router)

    # Root endpoint
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
        }

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run("flow_engine.api.app:create_app", factory=True, host="0.0.0.0", port=8000)
