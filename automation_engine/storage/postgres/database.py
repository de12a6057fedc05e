"""
PostgreSQL engine and session lifecycle for the automation store.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from automation_engine.config import Settings, get_settings
from automation_engine.storage.postgres.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine; hands out short-lived sessions."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        postgres = self._settings.postgres

        self._engine = create_async_engine(
            postgres.url,
            pool_size=postgres.pool_size,
            max_overflow=postgres.max_overflow,
            pool_timeout=postgres.pool_timeout,
            pool_pre_ping=True,
            connect_args={"server_settings": {"application_name": "automation-engine"}},
        )
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False, autoflush=False)
        logger.info(f"Database engine created for {postgres.host}:{postgres.port}/{postgres.database}")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session bound to one unit of work: committed when the block exits
        cleanly, rolled back otherwise.
        """
        if self._sessions is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_schema(self) -> None:
        """Create missing tables. Alembic owns the schema outside of tests."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health_check(self) -> bool:
        if self._engine is None:
            return False
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
