from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from entitysync.core.config import get_settings
from entitysync.core.errors import BatchWriteError


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools; SQLite (tests, local runs) keeps SQLAlchemy defaults.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def chunked(items: list, size: int) -> list[list]:
    # Bound single-statement size for batched writes and IN (...) lookups.
    size = max(1, int(size))
    return [items[index : index + size] for index in range(0, len(items), size)]


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for ops visibility without querying Postgres internals.
    pool = engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }


def nullable_eq(column: Any, value: Any) -> Any:
    # NULL scope columns must match with IS NULL, not "= NULL".
    if value is None:
        return column.is_(None)
    return column == value


@asynccontextmanager
async def commit_chunk(session: AsyncSession, label: str) -> AsyncIterator[None]:
    # One commit per chunk; the first failing chunk aborts the caller's stage.
    try:
        yield
        await session.commit()
    except BatchWriteError:
        await session.rollback()
        raise
    except Exception as exc:  # noqa: BLE001 - surfaced as a stage failure
        await session.rollback()
        raise BatchWriteError(f"{label} chunk failed") from exc
