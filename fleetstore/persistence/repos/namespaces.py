from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import ConflictError, NotFoundError
from fleetstore.domain.models import Namespace, NamespaceMember, User
from fleetstore.persistence.conflicts import check_conflicts
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


ROLE_OWNER = "owner"


def _has_member(user_id: str):  # noqa: ANN202
    return (
        select(NamespaceMember.user_id)
        .where(NamespaceMember.tenant_id == Namespace.tenant_id, NamespaceMember.user_id == user_id)
        .exists()
    )


SOURCE = QuerySource(
    name="namespace",
    model=Namespace,
    fields={
        "tenant_id": QueryField(Namespace.tenant_id),
        "name": QueryField(Namespace.name),
        "owner": QueryField(Namespace.owner),
        "created_at": QueryField(Namespace.created_at),
        "max_devices": QueryField(Namespace.max_devices),
        "session_record": QueryField(Namespace.session_record),
        "devices_accepted_count": QueryField(Namespace.devices_accepted_count),
        "devices_pending_count": QueryField(Namespace.devices_pending_count),
        "devices_rejected_count": QueryField(Namespace.devices_rejected_count),
        "devices_removed_count": QueryField(Namespace.devices_removed_count),
    },
    default_sort="created_at",
    tiebreaker=Namespace.tenant_id,
    tenant_column=Namespace.tenant_id,
    aliases={"tenant": "tenant_id", "settings.session_record": "session_record"},
    member_predicate=_has_member,
)


async def list_namespaces(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder)


async def resolve_namespace(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate)


async def get_namespace(session: AsyncSession, tenant_id: str) -> Namespace | None:
    result = await session.execute(
        select(Namespace).where(Namespace.tenant_id == tenant_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_namespace(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    owner: str,
    now: datetime,
    max_devices: int = -1,
    session_record: bool = True,
) -> Namespace:
    namespace = Namespace(
        tenant_id=tenant_id,
        name=name,
        owner=owner,
        max_devices=max_devices,
        session_record=session_record,
        created_at=now,
    )
    session.add(namespace)
    # The owner is always the one member holding the owner role.
    session.add(NamespaceMember(tenant_id=tenant_id, user_id=owner, role=ROLE_OWNER, added_at=now))
    await session.flush()
    return namespace


async def update_namespace(session: AsyncSession, tenant_id: str, values: dict[str, Any]) -> None:
    if not values:
        if await get_namespace(session, tenant_id) is None:
            raise NotFoundError("namespace", tenant_id)
        return
    result = await session.execute(
        update(Namespace)
        .where(tenant_predicate(Namespace, tenant_id))
        .values(**values)
        .execution_options(**BULK)
    )
    require_rows(result, "namespace", tenant_id)


async def delete_namespace_row(session: AsyncSession, tenant_id: str) -> None:
    result = await session.execute(
        delete(Namespace).where(tenant_predicate(Namespace, tenant_id)).execution_options(**BULK)
    )
    require_rows(result, "namespace", tenant_id)


async def get_member(session: AsyncSession, tenant_id: str, user_id: str) -> NamespaceMember | None:
    result = await session.execute(
        select(NamespaceMember).where(
            tenant_predicate(NamespaceMember, tenant_id), NamespaceMember.user_id == user_id
        )
    )
    return result.scalar_one_or_none()


async def add_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role: str,
    now: datetime,
    status: str = "accepted",
    expires_at: datetime | None = None,
) -> NamespaceMember:
    if role == ROLE_OWNER:
        # A second owner would break the single-owner invariant.
        raise ConflictError(["role"])
    if await get_namespace(session, tenant_id) is None:
        raise NotFoundError("namespace", tenant_id)
    member = NamespaceMember(
        tenant_id=tenant_id,
        user_id=user_id,
        role=role,
        status=status,
        added_at=now,
        expires_at=expires_at,
    )
    session.add(member)
    await session.flush()
    return member


async def update_member(session: AsyncSession, tenant_id: str, user_id: str, values: dict[str, Any]) -> None:
    member = await get_member(session, tenant_id, user_id)
    if member is None:
        raise NotFoundError("member", user_id)
    role = values.get("role")
    if role is not None and (role == ROLE_OWNER) != (member.role == ROLE_OWNER):
        # Ownership changes go through a dedicated transfer, never a role edit.
        raise ConflictError(["role"])
    if not values:
        return
    await session.execute(
        update(NamespaceMember)
        .where(tenant_predicate(NamespaceMember, tenant_id), NamespaceMember.user_id == user_id)
        .values(**values)
        .execution_options(**BULK)
    )


async def delete_member_row(session: AsyncSession, tenant_id: str, user_id: str) -> None:
    member = await get_member(session, tenant_id, user_id)
    if member is None:
        raise NotFoundError("member", user_id)
    if member.role == ROLE_OWNER:
        raise ConflictError(["role"])
    await session.execute(
        delete(NamespaceMember)
        .where(tenant_predicate(NamespaceMember, tenant_id), NamespaceMember.user_id == user_id)
        .execution_options(**BULK)
    )


async def delete_members_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(NamespaceMember).where(tenant_predicate(NamespaceMember, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_memberships_for_user(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        delete(NamespaceMember).where(NamespaceMember.user_id == user_id).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def clear_preferred_namespace(session: AsyncSession, tenant_id: str, user_id: str | None = None) -> int:
    stmt = update(User).where(User.preferred_namespace == tenant_id)
    if user_id is not None:
        stmt = stmt.where(User.id == user_id)
    result = await session.execute(stmt.values(preferred_namespace=None).execution_options(**BULK))
    return int(result.rowcount or 0)


async def owned_tenants(session: AsyncSession, user_id: str) -> list[str]:
    result = await session.execute(
        select(Namespace.tenant_id).where(Namespace.owner == user_id).order_by(Namespace.tenant_id)
    )
    return list(result.scalars().all())


async def member_tenants(session: AsyncSession, user_id: str) -> list[str]:
    result = await session.execute(
        select(NamespaceMember.tenant_id)
        .where(NamespaceMember.user_id == user_id)
        .order_by(NamespaceMember.tenant_id)
    )
    return list(result.scalars().all())


async def namespace_conflicts(session: AsyncSession, name: str | None) -> tuple[list[str], bool]:
    return await check_conflicts(session, Namespace, {"name": name})
