"""
PostgreSQL connection management for the engine's durable store.

One Database per process, built by the application lifespan and handed to
PostgresStorage. Every storage call opens its own short session; checkpoint
writes that touch several tables use ``transaction()``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from flow_engine.config.settings import PostgresSettings
from flow_engine.storage.postgres.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Async engine and session factory over the configured PostgreSQL."""

    def __init__(self, settings: PostgresSettings):
        self.settings = settings
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Create the pooled engine. Connections are opened lazily."""
        self._engine = create_async_engine(
            self.settings.url,
            pool_size=self.settings.pool_size,
            max_overflow=self.settings.max_overflow,
            pool_timeout=self.settings.pool_timeout,
            pool_pre_ping=True,
        )
        self._sessions = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        """Create missing tables. Production deployments use the alembic migration."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None

    async def ping(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    def _new_session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._sessions()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session committed on clean exit and rolled back on error."""
        session = self._new_session()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Session wrapped in one explicit transaction, for multi-table checkpoints."""
        session = self._new_session()
        try:
            async with session.begin():
                yield session
        finally:
            await session.close()
