"""
OrderOps Database Session Management

One pooled engine serves the API process. Celery tasks run each job under
a fresh event loop, so they open a short-lived engine per run with
``create_run_engine`` and dispose of it when the run ends.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from core.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Declarative base for all OrderOps models."""


def _pool_options(database_url: str) -> dict:
    # SQLite files keep SQLAlchemy's default pool
    if database_url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    **_pool_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_run_engine(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Unpooled engine and session factory for a single worker run. The caller disposes the engine."""
    run_engine = create_async_engine(database_url, poolclass=NullPool)
    return run_engine, async_sessionmaker(run_engine, class_=AsyncSession, expire_on_commit=False)
