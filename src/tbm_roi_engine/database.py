"""Declarative base, shared columns and async session management.

Every TBM table is scoped by company (tenant) and reporting period, so the
shared mixin supplies id, company_id, period, created_at and updated_at.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from datetime import date, datetime, timezone

from sqlalchemy import JSON, Date, DateTime, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tbm_roi_engine.observability import get_logger

logger = get_logger(__name__)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSONB().with_variant(JSON(), "sqlite")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all tbm_ tables."""


class CompanyModel:
    """Columns shared by every tenant-scoped table."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning company (tenant) identifier",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CompanyPeriodModel(CompanyModel):
    """Columns shared by every table keyed by (company, period)."""

    period: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
        comment="Reporting month, truncated to day 1",
    )


def init_database(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the process-wide async engine and session factory."""
    global _engine, _session_factory
    _engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("database_initialized", dialect=_engine.dialect.name)
    return _engine


async def dispose_database() -> None:
    """Dispose the engine created by init_database, if any."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session bound to the shared engine.

    Raises:
        RuntimeError: If init_database has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database is not initialized; call init_database() first")
    async with _session_factory() as session:
        yield session
