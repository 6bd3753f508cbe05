from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.domain.models import SystemSettings


SYSTEM_ID = "system"


async def get_system(session: AsyncSession) -> SystemSettings | None:
    result = await session.execute(
        select(SystemSettings).where(SystemSettings.id == SYSTEM_ID).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_system(session: AsyncSession, values: dict[str, Any], now: datetime) -> SystemSettings:
    # Single-row table; created on first write.
    current = await get_system(session)
    if current is None:
        current = SystemSettings(id=SYSTEM_ID, updated_at=now, **values)
        session.add(current)
    else:
        for key, value in values.items():
            setattr(current, key, value)
        current.updated_at = now
    await session.flush()
    return current
