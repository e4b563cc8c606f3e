import json
from decimal import Decimal
from datetime import datetime, date
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from psycopg.types.json import set_json_dumps

from scm_dispatch.config import settings


# Custom JSON encoder that handles Decimal, datetime, UUID etc. inside payload snapshots
class CustomJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime, UUID and other types."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        return super().default(obj)


def custom_json_dumps(obj):
    """Custom JSON dumps function shared by psycopg and the SQLAlchemy engine."""
    return json.dumps(obj, cls=CustomJSONEncoder)


# Configure psycopg to use our custom JSON encoder globally
set_json_dumps(custom_json_dumps)


def _driver_url(url: str) -> str:
    """Rewrite plain Postgres URLs to the async psycopg driver."""
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://")
    return url


def create_engine_for(url: str, echo: bool = False):
    """Create an async engine with pool settings appropriate for the backend."""
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            json_serializer=custom_json_dumps,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        _driver_url(url),
        echo=echo,
        json_serializer=custom_json_dumps,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={"connect_timeout": 30},
    )


def create_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)

# Create async session factory
async_session_factory = create_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind=None):
    """Create all tables registered on Base.metadata."""
    # Import models so they register with Base.metadata
    from scm_dispatch import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
