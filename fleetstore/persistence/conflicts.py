from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession


def _present(value: Any) -> bool:
    return value is not None and value != ""


async def check_conflicts(
    session: AsyncSession,
    model: Any,
    candidate: Mapping[str, Any],
    *,
    scope: Any = None,
) -> tuple[list[str], bool]:
    fields = {name: value for name, value in candidate.items() if _present(value)}
    if not fields:
        return [], False

    columns = [getattr(model, name) for name in fields]
    stmt = select(*columns).where(or_(*(getattr(model, name) == value for name, value in fields.items())))
    if scope is not None:
        stmt = stmt.where(scope)
    rows = (await session.execute(stmt)).all()

    # A row can match on one field only; report exactly the fields that collide.
    conflicting: set[str] = set()
    for row in rows:
        for name, value in fields.items():
            if getattr(row, name) == value:
                conflicting.add(name)
    found = sorted(conflicting)
    return found, bool(found)
