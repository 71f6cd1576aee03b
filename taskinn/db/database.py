from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
import redis.asyncio as redis

from taskinn.core.config import Settings


class Base(DeclarativeBase):
    pass


class Database:
    """Connection pool and session factory for one process.

    Built once at startup and handed to whoever needs it (the FastAPI app
    state, the ledger service, Celery tasks); nothing reaches for a module
    level engine.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 20,
        max_overflow: int = 30,
        statement_timeout: float = 10.0,
    ):
        if url.startswith("sqlite"):
            self.engine = create_async_engine(
                url,
                echo=echo,
                connect_args={"timeout": statement_timeout},
            )
        else:
            self.engine = create_async_engine(
                url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
                pool_recycle=3600,
                pool_timeout=statement_timeout,
                connect_args={"command_timeout": statement_timeout},
            )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            statement_timeout=settings.DATABASE_STATEMENT_TIMEOUT,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside a transaction: commit on success, roll back on any error."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def create_all(self):
        """Initialize database tables"""
        async with self.engine.begin() as conn:
            # Import all models here to ensure they are registered
            from taskinn.models import user, wallet, wallet_transaction, admin_wallet, admin_settings  # noqa: F401
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        """Close database connections"""
        await self.engine.dispose()


def create_redis_client(url: str) -> Optional[redis.Redis]:
    # Redis is optional for development
    try:
        return redis.from_url(url, decode_responses=True)
    except ValueError:
        return None


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency to get database session"""
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session

