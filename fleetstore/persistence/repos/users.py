from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import Namespace, User
from fleetstore.persistence.conflicts import check_conflicts
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


SOURCE = QuerySource(
    name="user",
    model=User,
    fields={
        "id": QueryField(User.id),
        "name": QueryField(User.name),
        "username": QueryField(User.username),
        "email": QueryField(User.email),
        "status": QueryField(User.status),
        "created_at": QueryField(User.created_at),
        "last_login": QueryField(User.last_login),
        "namespaces": QueryField(User.namespaces),
        "max_namespaces": QueryField(User.max_namespaces),
    },
    default_sort="created_at",
    tiebreaker=User.id,
)


@dataclass(frozen=True)
class UserConflicts:
    email: str | None = None
    username: str | None = None


def namespaces_owned():  # noqa: ANN201
    # Derived on read; never stored.
    return (
        select(func.count(Namespace.tenant_id))
        .where(Namespace.owner == User.id)
        .correlate(User)
        .scalar_subquery()
        .label("namespaces_owned")
    )


async def list_users(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder, namespaces_owned())


async def resolve_user(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate, namespaces_owned())


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    now: datetime,
    name: str = "",
    password_digest: str | None = None,
    status: str = "confirmed",
    max_namespaces: int = -1,
    user_id: str | None = None,
) -> User:
    user = User(
        id=user_id or str(uuid.uuid4()),
        name=name,
        username=username,
        email=email,
        password_digest=password_digest,
        status=status,
        created_at=now,
        namespaces=0,
        max_namespaces=max_namespaces,
    )
    session.add(user)
    await session.flush()
    return user


async def update_user(session: AsyncSession, user_id: str, values: dict[str, Any]) -> None:
    if not values:
        existing = await session.execute(select(User.id).where(User.id == user_id))
        if existing.scalar_one_or_none() is None:
            raise NotFoundError("user", user_id)
        return
    result = await session.execute(
        update(User).where(User.id == user_id).values(**values).execution_options(**BULK)
    )
    require_rows(result, "user", user_id)


async def increment_namespaces(session: AsyncSession, user_id: str, delta: int) -> None:
    result = await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(namespaces=User.namespaces + delta)
        .execution_options(**BULK)
    )
    require_rows(result, "user", user_id)


async def delete_user_row(session: AsyncSession, user_id: str) -> None:
    result = await session.execute(delete(User).where(User.id == user_id).execution_options(**BULK))
    require_rows(result, "user", user_id)


async def user_conflicts(session: AsyncSession, candidate: UserConflicts) -> tuple[list[str], bool]:
    return await check_conflicts(
        session, User, {"email": candidate.email, "username": candidate.username}
    )
