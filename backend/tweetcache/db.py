"""Async SQLAlchemy engine + session factory for the SQL blob backend."""
from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool


class Base(DeclarativeBase):
    """Declarative base used by all ORM models."""


def build_engine(database_url: str, *, pooled: bool = True, echo: bool = False) -> AsyncEngine:
    """Pooled for the API process; unpooled for Celery tasks, which get a fresh loop per run."""
    if not pooled:
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
