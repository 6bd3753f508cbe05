from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import DeviceTag, FirewallRuleTag, PublicKeyTag, Tag
from fleetstore.persistence.conflicts import check_conflicts
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page


SOURCE = QuerySource(
    name="tag",
    model=Tag,
    fields={
        "id": QueryField(Tag.id),
        "name": QueryField(Tag.name),
        "tenant_id": QueryField(Tag.tenant_id),
        "created_at": QueryField(Tag.created_at),
    },
    default_sort="created_at",
    tiebreaker=Tag.id,
    tenant_column=Tag.tenant_id,
)


@dataclass(frozen=True)
class TagTable:
    # A denormalized per-owner tag table; one row per (owner, tag name).
    name: str
    model: Any
    owner: Any

    async def insert(self, session: AsyncSession, tenant_id: str, owner_id: str, tag: str) -> None:
        # Core insert keeps previously loaded tag rows in the identity map out of the way.
        await session.execute(
            insert(self.model).values({"tenant_id": tenant_id, self.owner.key: owner_id, "name": tag})
        )


DEVICE_TAGS = TagTable("device", DeviceTag, DeviceTag.device_uid)
FIREWALL_RULE_TAGS = TagTable("firewall_rule", FirewallRuleTag, FirewallRuleTag.rule_id)
PUBLIC_KEY_TAGS = TagTable("public_key", PublicKeyTag, PublicKeyTag.fingerprint)
TAG_TABLES = (DEVICE_TAGS, FIREWALL_RULE_TAGS, PUBLIC_KEY_TAGS)


def contains_all(table: TagTable, owner_column: Any, tenant_column: Any):  # noqa: ANN201
    # "All of these tags are present" as one correlated EXISTS per value, keyed on (tenant, owner).
    def _build(values: Iterable[str]):  # noqa: ANN202
        clauses = [
            select(table.owner)
            .where(
                table.model.tenant_id == tenant_column,
                table.owner == owner_column,
                table.model.name == value,
            )
            .exists()
            for value in values
        ]
        return and_(*clauses)

    return _build


async def get_by_name(session: AsyncSession, tenant_id: str, name: str) -> Tag | None:
    result = await session.execute(
        select(Tag).where(tenant_predicate(Tag, tenant_id), Tag.name == name)
    )
    return result.scalar_one_or_none()


async def ensure(session: AsyncSession, tenant_id: str, name: str, now: datetime) -> Tag:
    # Idempotent: tags are created on first use and reused afterwards.
    existing = await get_by_name(session, tenant_id, name)
    if existing is not None:
        return existing
    tag = Tag(id=str(uuid.uuid4()), tenant_id=tenant_id, name=name, created_at=now)
    session.add(tag)
    await session.flush()
    return tag


async def owner_tags(session: AsyncSession, table: TagTable, tenant_id: str, owner_id: str) -> list[str]:
    result = await session.execute(
        select(table.model.name)
        .where(tenant_predicate(table.model, tenant_id), table.owner == owner_id)
        .order_by(table.model.name)
    )
    return list(result.scalars().all())


async def push(
    session: AsyncSession, table: TagTable, tenant_id: str, owner_id: str, name: str, now: datetime
) -> bool:
    await ensure(session, tenant_id, name, now)
    if name in await owner_tags(session, table, tenant_id, owner_id):
        return False
    await table.insert(session, tenant_id, owner_id, name)
    return True


async def pull(session: AsyncSession, table: TagTable, tenant_id: str, owner_id: str, name: str) -> None:
    result = await session.execute(
        delete(table.model)
        .where(tenant_predicate(table.model, tenant_id), table.owner == owner_id, table.model.name == name)
        .execution_options(**BULK)
    )
    if (result.rowcount or 0) == 0:
        raise NotFoundError(f"{table.name} tag", name)


async def replace_owner_tags(
    session: AsyncSession,
    table: TagTable,
    tenant_id: str,
    owner_id: str,
    names: Iterable[str],
    now: datetime,
) -> list[str]:
    wanted = sorted(set(names))
    await delete_owner_tags(session, table, tenant_id, owner_id)
    for name in wanted:
        await ensure(session, tenant_id, name, now)
        await table.insert(session, tenant_id, owner_id, name)
    return wanted


async def delete_owner_tags(session: AsyncSession, table: TagTable, tenant_id: str, owner_id: str) -> int:
    result = await session.execute(
        delete(table.model)
        .where(tenant_predicate(table.model, tenant_id), table.owner == owner_id)
        .execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def _count_owners(session: AsyncSession, table: TagTable, tenant_id: str, name: str) -> int:
    result = await session.execute(
        select(func.count(table.owner)).where(tenant_predicate(table.model, tenant_id), table.model.name == name)
    )
    return int(result.scalar() or 0)


async def rename_in_table(session: AsyncSession, table: TagTable, tenant_id: str, old: str, new: str) -> int:
    modified = await _count_owners(session, table, tenant_id, old)
    if modified == 0:
        return 0
    # Owners already tagged with the new name just lose the old row; the rest are renamed.
    already_tagged = select(table.owner).where(tenant_predicate(table.model, tenant_id), table.model.name == new)
    await session.execute(
        delete(table.model)
        .where(
            tenant_predicate(table.model, tenant_id),
            table.model.name == old,
            table.owner.in_(already_tagged),
        )
        .execution_options(**BULK)
    )
    await session.execute(
        update(table.model)
        .where(tenant_predicate(table.model, tenant_id), table.model.name == old)
        .values(name=new)
        .execution_options(**BULK)
    )
    return modified


async def delete_in_table(session: AsyncSession, table: TagTable, tenant_id: str, name: str) -> int:
    result = await session.execute(
        delete(table.model)
        .where(tenant_predicate(table.model, tenant_id), table.model.name == name)
        .execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def rename_definition(session: AsyncSession, tenant_id: str, old: str, new: str) -> None:
    current = await get_by_name(session, tenant_id, old)
    if current is None:
        return
    if await get_by_name(session, tenant_id, new) is not None:
        await session.execute(delete(Tag).where(Tag.id == current.id).execution_options(**BULK))
        return
    await session.execute(update(Tag).where(Tag.id == current.id).values(name=new).execution_options(**BULK))


async def delete_definition(session: AsyncSession, tenant_id: str, name: str) -> int:
    result = await session.execute(
        delete(Tag).where(tenant_predicate(Tag, tenant_id), Tag.name == name).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(Tag).where(tenant_predicate(Tag, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def tagged_owners(session: AsyncSession, table: TagTable, tenant_id: str, name: str) -> list[str]:
    result = await session.execute(
        select(table.owner).where(tenant_predicate(table.model, tenant_id), table.model.name == name)
    )
    return list(result.scalars().all())


async def list_tags(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder)


async def resolve_tag(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate)


async def tag_conflicts(session: AsyncSession, tenant_id: str, name: str | None) -> tuple[list[str], bool]:
    return await check_conflicts(session, Tag, {"name": name}, scope=tenant_predicate(Tag, tenant_id))
