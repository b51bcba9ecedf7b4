"""
Database service for FireFund
Async SQLAlchemy engine and session management
"""

import logging
from pathlib import Path
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy import text

from firefund.core.models import Base


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/firefund.db"


class DatabaseService:
    """Async database service"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.database_url: Optional[str] = None
        self.engine: Optional[AsyncEngine] = None
        self.SessionLocal: Optional[async_sessionmaker] = None

    def initialize(self, database_url: str = DEFAULT_DATABASE_URL, echo: bool = False):
        """Create the engine and session factory for ``database_url``"""
        url = make_url(database_url)
        engine_kwargs = {'echo': echo}

        if url.get_backend_name() == 'sqlite':
            database = url.database
            if database and database != ':memory:':
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            engine_kwargs['poolclass'] = StaticPool
            engine_kwargs['connect_args'] = {"check_same_thread": False}

        self.database_url = database_url
        self.engine = create_async_engine(database_url, **engine_kwargs)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        self.logger.info(f"Database service initialized: {url.render_as_string(hide_password=True)}")

    def _require_engine(self):
        if self.engine is None:
            raise RuntimeError("Database service not initialized")

    async def create_tables(self):
        """Create tables using SQLAlchemy directly"""
        self._require_engine()
        self.logger.info("Creating tables using SQLAlchemy...")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("All tables created successfully")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session"""
        self._require_engine()
        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check database connection health"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            self.logger.error(f"Database health check failed: {e}")
            return False

    async def close(self):
        """Close database connections"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.SessionLocal = None
            self.logger.info("Database connections closed")


# Global database service instance
db_service = DatabaseService()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session in FastAPI routes"""
    async with db_service.get_session() as session:
        yield session
