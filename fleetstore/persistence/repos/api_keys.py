from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import APIKey
from fleetstore.persistence.conflicts import check_conflicts
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


SOURCE = QuerySource(
    name="api_key",
    model=APIKey,
    fields={
        "id": QueryField(APIKey.id),
        "tenant_id": QueryField(APIKey.tenant_id),
        "name": QueryField(APIKey.name),
        "role": QueryField(APIKey.role),
        "created_by": QueryField(APIKey.created_by),
        "created_at": QueryField(APIKey.created_at),
        "updated_at": QueryField(APIKey.updated_at),
        "expires_in": QueryField(APIKey.expires_at),
    },
    default_sort="created_at",
    tiebreaker=APIKey.id,
    tenant_column=APIKey.tenant_id,
    aliases={"expires_at": "expires_in"},
)


@dataclass(frozen=True)
class APIKeyConflicts:
    id: str | None = None
    name: str | None = None


async def list_api_keys(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder)


async def resolve_api_key(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate)


async def create_api_key(
    session: AsyncSession,
    *,
    key_id: str,
    tenant_id: str,
    name: str,
    created_by: str,
    now: datetime,
    role: str = "observer",
    expires_at: datetime | None = None,
) -> APIKey:
    key = APIKey(
        id=key_id,
        tenant_id=tenant_id,
        name=name,
        role=role,
        created_by=created_by,
        created_at=now,
        updated_at=now,
        expires_at=expires_at,
    )
    session.add(key)
    await session.flush()
    return key


async def update_api_key(session: AsyncSession, tenant_id: str, key_id: str, values: dict[str, Any]) -> None:
    if not values:
        existing = await session.execute(
            select(APIKey.id).where(APIKey.id == key_id, tenant_predicate(APIKey, tenant_id))
        )
        if existing.scalar_one_or_none() is None:
            raise NotFoundError("api_key", key_id)
        return
    result = await session.execute(
        update(APIKey)
        .where(APIKey.id == key_id, tenant_predicate(APIKey, tenant_id))
        .values(**values)
        .execution_options(**BULK)
    )
    require_rows(result, "api_key", key_id)


async def delete_api_key(session: AsyncSession, tenant_id: str, key_id: str) -> None:
    result = await session.execute(
        delete(APIKey).where(APIKey.id == key_id, tenant_predicate(APIKey, tenant_id)).execution_options(**BULK)
    )
    require_rows(result, "api_key", key_id)


async def delete_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(APIKey).where(tenant_predicate(APIKey, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def api_key_conflicts(
    session: AsyncSession, tenant_id: str, candidate: APIKeyConflicts
) -> tuple[list[str], bool]:
    return await check_conflicts(
        session,
        APIKey,
        {"id": candidate.id, "name": candidate.name},
        scope=tenant_predicate(APIKey, tenant_id),
    )
