"""
ceplatform/database.py
Database configuration

The engine and session factory live on a Database object created by the
application lifespan (or the CLI) and handed to whoever needs sessions.
"""
import logging

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from ceplatform.orm.base import Base
import ceplatform.orm  # noqa: F401  ensures all models are registered

logger = logging.getLogger(__name__)


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, database_url: str, echo: bool = False):
        if not database_url:
            raise ValueError("database_url is not set")

        self.url = database_url

        if "sqlite" in database_url.lower():
            # SQLite: busy timeout lets concurrent writers wait instead of failing
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                future=True,
                connect_args={
                    "timeout": 30.0,
                }
            )
        else:
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                future=True,
                pool_pre_ping=True,
                pool_size=20,
                max_overflow=30,
                pool_timeout=30,
                pool_recycle=3600,
            )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def init_db(self):
        """Create all tables. Idempotent."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def dispose(self):
        await self.engine.dispose()


async def get_db(request: Request):
    """Dependency for getting async database session"""
    database: Database = request.app.state.database
    async with database.session() as session:
        try:
            yield session
        finally:
            await session.close()
