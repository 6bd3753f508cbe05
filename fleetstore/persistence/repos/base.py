from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import Row
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from fleetstore.core.errors import NotFoundError
from fleetstore.persistence.query import QueryBuilder


async def fetch_page(
    session: AsyncSession,
    builder: QueryBuilder,
    *columns: Any,
    joins: Sequence[tuple[Any, Any]] = (),
) -> tuple[list[Row], int]:
    # Count and data share one criteria tuple so totals track the filters, not the page.
    total = int((await session.execute(builder.count_statement())).scalar() or 0)
    rows = (await session.execute(builder.data_statement(*columns, joins=joins))).all()
    return list(rows), total


async def fetch_one(
    session: AsyncSession,
    builder: QueryBuilder,
    predicate: ColumnElement,
    *columns: Any,
    joins: Sequence[tuple[Any, Any]] = (),
) -> Row:
    stmt = builder.where(predicate).data_statement(*columns, joins=joins).limit(1)
    row = (await session.execute(stmt)).first()
    if row is None:
        raise NotFoundError(builder.source.name)
    return row


def require_rows(result, entity: str, identifier: object = None) -> int:  # noqa: ANN001
    # Update/delete targets that matched nothing are NotFound, never a silent success.
    count = int(result.rowcount or 0)
    if count == 0:
        raise NotFoundError(entity, identifier)
    return count


BULK = {"synchronize_session": False}
