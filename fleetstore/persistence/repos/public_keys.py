from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import PublicKey, PublicKeyTag
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos import tags as tags_repo
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


SOURCE = QuerySource(
    name="public_key",
    model=PublicKey,
    fields={
        "fingerprint": QueryField(PublicKey.fingerprint),
        "tenant_id": QueryField(PublicKey.tenant_id),
        "name": QueryField(PublicKey.name),
        "username": QueryField(PublicKey.username),
        "hostname": QueryField(PublicKey.filter_hostname),
        "created_at": QueryField(PublicKey.created_at),
        "tags": QueryField(
            contains_all=tags_repo.contains_all(
                tags_repo.PUBLIC_KEY_TAGS, PublicKey.fingerprint, PublicKey.tenant_id
            ),
            sortable=False,
        ),
    },
    default_sort="created_at",
    tiebreaker=PublicKey.fingerprint,
    tenant_column=PublicKey.tenant_id,
    aliases={"filter.hostname": "hostname", "filter.tags": "tags"},
)


async def list_keys(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder)


async def resolve_key(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate)


async def get_key(session: AsyncSession, tenant_id: str, fingerprint: str) -> PublicKey | None:
    result = await session.execute(
        select(PublicKey)
        .where(PublicKey.fingerprint == fingerprint, tenant_predicate(PublicKey, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    fingerprint: str,
    data: str,
    now: datetime,
    name: str = "",
    username: str = ".*",
    filter_hostname: str | None = None,
    filter_tags: Sequence[str] = (),
) -> PublicKey:
    key = PublicKey(
        tenant_id=tenant_id,
        fingerprint=fingerprint,
        name=name,
        data=data,
        username=username,
        filter_hostname=filter_hostname,
        created_at=now,
    )
    session.add(key)
    await session.flush()
    if filter_tags:
        await tags_repo.replace_owner_tags(
            session, tags_repo.PUBLIC_KEY_TAGS, tenant_id, fingerprint, filter_tags, now
        )
    return key


async def update_key(session: AsyncSession, tenant_id: str, fingerprint: str, values: dict[str, Any]) -> None:
    if not values:
        if await get_key(session, tenant_id, fingerprint) is None:
            raise NotFoundError("public_key", fingerprint)
        return
    result = await session.execute(
        update(PublicKey)
        .where(PublicKey.fingerprint == fingerprint, tenant_predicate(PublicKey, tenant_id))
        .values(**values)
        .execution_options(**BULK)
    )
    require_rows(result, "public_key", fingerprint)


async def delete_key(session: AsyncSession, tenant_id: str, fingerprint: str) -> None:
    await tags_repo.delete_owner_tags(session, tags_repo.PUBLIC_KEY_TAGS, tenant_id, fingerprint)
    result = await session.execute(
        delete(PublicKey)
        .where(PublicKey.fingerprint == fingerprint, tenant_predicate(PublicKey, tenant_id))
        .execution_options(**BULK)
    )
    require_rows(result, "public_key", fingerprint)


async def delete_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    await session.execute(
        delete(PublicKeyTag).where(tenant_predicate(PublicKeyTag, tenant_id)).execution_options(**BULK)
    )
    result = await session.execute(
        delete(PublicKey).where(tenant_predicate(PublicKey, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)
