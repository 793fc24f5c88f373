"""Async SQLAlchemy plumbing: declarative base, session factory, base repository.

Repositories take an ``AsyncSession`` at construction time and operate within
the caller's transaction. Writes call ``session.flush()`` so generated
defaults are populated; commits happen at the unit-of-work boundary.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from sqlalchemy import DateTime, Uuid
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from msp_billing_recon.settings import Settings


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for every recon_ table."""


class ReconModel(Base):
    """Abstract base supplying id, created_at and updated_at columns."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_database(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Create the process-wide engine and session factory.

    Args:
        settings: Settings providing database_url and database_echo.

    Returns:
        The session factory (also retained for get_db_session).
    """
    global _engine, _session_factory
    _engine = create_async_engine(settings.database_url, echo=settings.database_echo, pool_pre_ping=True)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _session_factory


async def dispose_database() -> None:
    """Dispose the engine created by init_database, if any."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session; commits on success, rolls back on error."""
    if _session_factory is None:
        raise RuntimeError("Database not initialised; call init_database() first")
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


ModelT = TypeVar("ModelT", bound=ReconModel)


class BaseRepository(Generic[ModelT]):
    """Create and get primitives shared by all repositories."""

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def create(self, instance: ModelT) -> ModelT:
        """Add and flush a new row, returning it with defaults populated."""
        self._session.add(instance)
        await self._session.flush()
        return instance

    async def get_by_id(self, instance_id: uuid.UUID) -> ModelT | None:
        """Fetch one row by primary key."""
        return await self._session.get(self._model, instance_id)


async def insert_or_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING``.

    Used for the natural-key upserts (catalog rows, assignments, leases) so
    repeated runs never create duplicates, even when two runs race.

    Returns:
        The execution result; ``rowcount`` is 1 when a row was inserted.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)
