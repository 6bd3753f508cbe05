from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import Device, Namespace
from fleetstore.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

DEVICE_STATUSES = ("accepted", "pending", "rejected", "removed")


def is_online(
    last_seen: datetime | None,
    disconnected_at: datetime | None,
    now: datetime,
    window: timedelta,
) -> bool:
    if disconnected_at is not None or last_seen is None:
        return False
    return last_seen > now - window


def online_predicate(model: Any, now: datetime, window: timedelta, online: bool = True) -> ColumnElement:
    # Same rule as is_online, evaluated by the database.
    threshold = now - window
    if online:
        return and_(model.disconnected_at.is_(None), model.last_seen > threshold)
    return or_(model.disconnected_at.is_not(None), model.last_seen <= threshold)


def online_expression(model: Any, now: datetime, window: timedelta) -> ColumnElement:
    return case((online_predicate(model, now, window), True), else_=False)


def counter_column(status: str) -> Any:
    if status not in DEVICE_STATUSES:
        raise ValueError(f"unknown device status: {status}")
    return getattr(Namespace, f"devices_{status}_count")


async def increment_device_count(session: AsyncSession, tenant_id: str, status: str, delta: int) -> None:
    # Atomic col = col + delta so concurrent transitions do not overwrite each other.
    column = counter_column(status)
    result = await session.execute(
        update(Namespace)
        .where(tenant_predicate(Namespace, tenant_id))
        .values({column.key: column + delta})
    )
    if (result.rowcount or 0) == 0:
        raise NotFoundError("namespace", tenant_id)


async def sync_device_counts(session: AsyncSession, tenant_id: str | None = None) -> dict[str, dict[str, int]]:
    # Recompute counters from the devices table; the repair path for counter drift.
    stmt = select(Device.tenant_id, Device.status, func.count()).group_by(Device.tenant_id, Device.status)
    if tenant_id:
        stmt = stmt.where(tenant_predicate(Device, tenant_id))
    rows = (await session.execute(stmt)).all()

    counts: dict[str, dict[str, int]] = {}
    for row_tenant, status, total in rows:
        if status not in DEVICE_STATUSES:
            logger.warning("device_count_unknown_status tenant_id=%s status=%s", row_tenant, status)
            continue
        counts.setdefault(row_tenant, dict.fromkeys(DEVICE_STATUSES, 0))[status] = int(total)

    namespace_stmt = select(Namespace.tenant_id)
    if tenant_id:
        namespace_stmt = namespace_stmt.where(tenant_predicate(Namespace, tenant_id))
    tenants = list((await session.execute(namespace_stmt)).scalars().all())

    repaired: dict[str, dict[str, int]] = {}
    for tenant in tenants:
        tenant_counts = counts.get(tenant, dict.fromkeys(DEVICE_STATUSES, 0))
        await session.execute(
            update(Namespace)
            .where(Namespace.tenant_id == tenant)
            .values({counter_column(status).key: tenant_counts[status] for status in DEVICE_STATUSES})
        )
        repaired[tenant] = tenant_counts
    logger.info("device_counts_synced namespaces=%s", len(repaired))
    return repaired
