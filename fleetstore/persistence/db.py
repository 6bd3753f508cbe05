from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fleetstore.core.config import Settings, get_settings
from fleetstore.domain.models import Base


def engine_kwargs(settings: Settings, url: str | None = None) -> dict[str, Any]:
    url = url or settings.database_url
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection or every session sees an empty schema.
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs
    # Configure bounded asyncpg pools for predictable latency under load.
    kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return kwargs


def build_engine(url: str | None = None, settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = url or settings.database_url
    return create_async_engine(url, **engine_kwargs(settings, url))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(target: AsyncEngine) -> None:
    # Bootstrap tables from ORM metadata; production schemas come from Alembic migrations.
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
