from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import ConnectedDevice, Device, DeviceTag, Namespace, Tunnel
from fleetstore.persistence import presence
from fleetstore.persistence.conflicts import check_conflicts
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos import tags as tags_repo
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


def _online(builder: QueryBuilder, value: Any):  # noqa: ANN202
    return presence.online_predicate(Device, builder.now, builder.presence_window, bool(value))


def _info(key: str) -> QueryField:
    return QueryField(Device.info_json[key].as_string(), sortable=False)


SOURCE = QuerySource(
    name="device",
    model=Device,
    fields={
        "uid": QueryField(Device.uid),
        "name": QueryField(Device.name),
        "mac": QueryField(Device.mac),
        "status": QueryField(Device.status),
        "tenant_id": QueryField(Device.tenant_id),
        "last_seen": QueryField(Device.last_seen),
        "created_at": QueryField(Device.created_at),
        "status_updated_at": QueryField(Device.status_updated_at),
        "disconnected_at": QueryField(Device.disconnected_at),
        "remote_addr": QueryField(Device.remote_addr),
        "platform": _info("platform"),
        "identifier": _info("id"),
        "pretty_name": _info("pretty_name"),
        "version": _info("version"),
        "arch": _info("arch"),
        "tags": QueryField(
            contains_all=tags_repo.contains_all(tags_repo.DEVICE_TAGS, Device.uid, Device.tenant_id),
            sortable=False,
        ),
        "online": QueryField(predicate=_online, sortable=False),
    },
    default_sort="last_seen",
    tiebreaker=Device.uid,
    tenant_column=Device.tenant_id,
    # Document-style paths accepted from older clients.
    aliases={
        "hostname": "name",
        "identity.mac": "mac",
        "info.platform": "platform",
        "info.id": "identifier",
        "info.pretty_name": "pretty_name",
        "info.version": "version",
        "info.arch": "arch",
    },
)


def _late_columns(builder: QueryBuilder) -> tuple[Any, ...]:
    return (
        presence.online_expression(Device, builder.now, builder.presence_window).label("online"),
        Namespace.name.label("namespace"),
    )


_JOINS = ((Namespace, Namespace.tenant_id == Device.tenant_id),)


async def list_devices(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder, *_late_columns(builder), joins=_JOINS)


async def resolve_device(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate, *_late_columns(builder), joins=_JOINS)


async def get_device(session: AsyncSession, uid: str) -> Device | None:
    result = await session.execute(
        select(Device).where(Device.uid == uid).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_device(
    session: AsyncSession,
    *,
    uid: str,
    tenant_id: str,
    name: str,
    now: datetime,
    mac: str | None = None,
    info: dict[str, Any] | None = None,
    remote_addr: str | None = None,
    status: str = "pending",
    tags: Sequence[str] = (),
) -> Device:
    device = Device(
        uid=uid,
        tenant_id=tenant_id,
        name=name,
        mac=mac,
        status=status,
        status_updated_at=now,
        created_at=now,
        last_seen=now,
        remote_addr=remote_addr,
        info_json=dict(info or {}),
    )
    session.add(device)
    await session.flush()
    if tags:
        await tags_repo.replace_owner_tags(session, tags_repo.DEVICE_TAGS, tenant_id, uid, tags, now)
    return device


async def update_device(session: AsyncSession, uid: str, tenant_id: str, values: dict[str, Any]) -> int:
    if not values:
        # Nothing to write; still surface a missing target.
        existing = await session.execute(
            select(Device.uid).where(Device.uid == uid, tenant_predicate(Device, tenant_id))
        )
        if existing.scalar_one_or_none() is None:
            raise NotFoundError("device", uid)
        return 1
    result = await session.execute(
        update(Device)
        .where(Device.uid == uid, tenant_predicate(Device, tenant_id))
        .values(**values)
        .execution_options(**BULK)
    )
    return require_rows(result, "device", uid)


async def update_status(session: AsyncSession, uid: str, tenant_id: str, status: str, now: datetime) -> str:
    # Returns the previous status so counters can move atomically with the row.
    presence.counter_column(status)
    current = await session.execute(
        select(Device.status).where(Device.uid == uid, tenant_predicate(Device, tenant_id))
    )
    previous = current.scalar_one_or_none()
    if previous is None:
        raise NotFoundError("device", uid)
    if previous == status:
        return previous
    await session.execute(
        update(Device)
        .where(Device.uid == uid, tenant_predicate(Device, tenant_id))
        .values(status=status, status_updated_at=now)
        .execution_options(**BULK)
    )
    await presence.increment_device_count(session, tenant_id, previous, -1)
    await presence.increment_device_count(session, tenant_id, status, 1)
    await session.execute(
        update(ConnectedDevice)
        .where(ConnectedDevice.uid == uid)
        .values(status=status)
        .execution_options(**BULK)
    )
    return previous


async def delete_device_row(session: AsyncSession, uid: str, tenant_id: str) -> None:
    result = await session.execute(
        delete(Device).where(Device.uid == uid, tenant_predicate(Device, tenant_id)).execution_options(**BULK)
    )
    require_rows(result, "device", uid)


async def delete_device_tags(session: AsyncSession, uid: str, tenant_id: str) -> int:
    return await tags_repo.delete_owner_tags(session, tags_repo.DEVICE_TAGS, tenant_id, uid)


async def delete_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    await session.execute(
        delete(DeviceTag).where(tenant_predicate(DeviceTag, tenant_id)).execution_options(**BULK)
    )
    result = await session.execute(
        delete(Device).where(tenant_predicate(Device, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def heartbeat(session: AsyncSession, uids: Iterable[str], now: datetime) -> int:
    uids = sorted(set(uids))
    if not uids:
        return 0
    result = await session.execute(
        update(Device)
        .where(Device.uid.in_(uids))
        .values(last_seen=now, disconnected_at=None)
        .execution_options(**BULK)
    )
    rows = (await session.execute(select(Device.uid, Device.tenant_id, Device.status).where(Device.uid.in_(uids)))).all()
    # Connected-device markers mirror live devices for the connection manager.
    await session.execute(
        delete(ConnectedDevice).where(ConnectedDevice.uid.in_(uids)).execution_options(**BULK)
    )
    if rows:
        await session.execute(
            insert(ConnectedDevice),
            [
                {"uid": uid, "tenant_id": tenant_id, "status": status, "last_seen": now}
                for uid, tenant_id, status in rows
            ],
        )
    return int(result.rowcount or 0)


async def set_offline(session: AsyncSession, uid: str, now: datetime) -> None:
    result = await session.execute(
        update(Device).where(Device.uid == uid).values(disconnected_at=now).execution_options(**BULK)
    )
    require_rows(result, "device", uid)
    await delete_connected(session, uid)


async def delete_connected(session: AsyncSession, uid: str) -> int:
    result = await session.execute(
        delete(ConnectedDevice).where(ConnectedDevice.uid == uid).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_connected_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(ConnectedDevice).where(tenant_predicate(ConnectedDevice, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def create_tunnel(
    session: AsyncSession, *, address: str, tenant_id: str, device_uid: str, now: datetime
) -> Tunnel:
    tunnel = Tunnel(address=address, tenant_id=tenant_id, device_uid=device_uid, created_at=now)
    session.add(tunnel)
    await session.flush()
    return tunnel


async def delete_tunnels_for_device(session: AsyncSession, uid: str, tenant_id: str) -> int:
    result = await session.execute(
        delete(Tunnel)
        .where(Tunnel.device_uid == uid, tenant_predicate(Tunnel, tenant_id))
        .execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_tunnels_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(Tunnel).where(tenant_predicate(Tunnel, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def tenant_device_uids(session: AsyncSession, tenant_id: str) -> list[str]:
    result = await session.execute(select(Device.uid).where(tenant_predicate(Device, tenant_id)))
    return list(result.scalars().all())


async def device_conflicts(session: AsyncSession, tenant_id: str, name: str | None) -> tuple[list[str], bool]:
    return await check_conflicts(session, Device, {"name": name}, scope=tenant_predicate(Device, tenant_id))
