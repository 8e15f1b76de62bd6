"""Async engine, session factory and startup schema checks."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from kincare.config import settings
from kincare.models import Base

logger = logging.getLogger("kincare.database")

REQUIRED_TABLES = ("identities", "access_records", "access_audit_log")


def _connect_args() -> dict[str, Any]:
    if settings.database_url.startswith("postgresql+asyncpg"):
        return {"server_settings": {"application_name": "kincare-access"}}
    return {}


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_timeout=30,
    pool_recycle=settings.database_pool_recycle,
    pool_pre_ping=settings.database_pool_pre_ping,
    connect_args=_connect_args(),
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class SchemaNotMigrated(RuntimeError):
    """Raised at startup when Alembic migrations have not been applied."""


def _missing_tables(sync_conn) -> list[str]:
    existing = set(inspect(sync_conn).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]


async def _prepare_schema(conn: AsyncConnection) -> None:
    if settings.debug:
        await conn.run_sync(Base.metadata.create_all)
        return
    missing = await conn.run_sync(_missing_tables)
    if missing:
        raise SchemaNotMigrated(
            f"Missing tables {', '.join(missing)}; run `alembic upgrade head`"
        )


async def init_db() -> None:
    """Wait for the database, then create (debug) or verify the schema.

    Connection failures are retried with a linear backoff capped at ten
    seconds; a missing schema fails immediately.
    """
    total_attempts = settings.database_init_retries + 1
    for attempt in range(1, total_attempts + 1):
        try:
            async with engine.begin() as conn:
                await _prepare_schema(conn)
        except (OSError, SQLAlchemyError) as exc:
            if attempt >= total_attempts:
                logger.exception("Database unavailable after %d attempts", attempt)
                raise
            delay_seconds = min(settings.database_init_retry_delay_seconds * attempt, 10.0)
            logger.warning(
                "Database not ready (attempt %d/%d, %s); retrying in %.1fs",
                attempt,
                total_attempts,
                exc.__class__.__name__,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)
            continue

        if attempt > 1:
            logger.info("Database ready after %d attempts", attempt)
        return


async def close_db() -> None:
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; committed on success, rolled back on error."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Same as :func:`get_db` for work outside a request (the expiry sweep)."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
