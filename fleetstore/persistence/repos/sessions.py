from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import ActiveSession, Device, RecordedFrame, Session, SessionEvent
from fleetstore.persistence.filters import coerce_bool
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


def _active_exists():  # noqa: ANN202
    return select(ActiveSession.uid).where(ActiveSession.uid == Session.uid).exists()


def _active(builder: QueryBuilder, value: Any):  # noqa: ANN202
    clause = _active_exists()
    return clause if coerce_bool(value) else ~clause


SOURCE = QuerySource(
    name="session",
    model=Session,
    fields={
        "uid": QueryField(Session.uid),
        "device_uid": QueryField(Session.device_uid),
        "tenant_id": QueryField(Session.tenant_id),
        "username": QueryField(Session.username),
        "ip_address": QueryField(Session.ip_address),
        "type": QueryField(Session.type),
        "started_at": QueryField(Session.started_at),
        "last_seen": QueryField(Session.last_seen),
        "closed": QueryField(Session.closed),
        "recorded": QueryField(Session.recorded),
        "authenticated": QueryField(Session.authenticated),
        "active": QueryField(predicate=_active, sortable=False),
    },
    default_sort="started_at",
    tiebreaker=Session.uid,
    tenant_column=Session.tenant_id,
)


def _late_columns() -> tuple[Any, ...]:
    return (_active_exists().label("active"), Device.name.label("device_name"))


_JOINS = ((Device, Device.uid == Session.device_uid),)


async def list_sessions(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder, *_late_columns(), joins=_JOINS)


async def resolve_session(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate, *_late_columns(), joins=_JOINS)


async def get_session_row(session: AsyncSession, uid: str) -> Session | None:
    result = await session.execute(
        select(Session).where(Session.uid == uid).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_session(
    session: AsyncSession,
    *,
    uid: str,
    device_uid: str,
    tenant_id: str,
    now: datetime,
    username: str = "",
    ip_address: str = "",
    type: str = "shell",
    term: str | None = None,
) -> Session:
    row = Session(
        uid=uid,
        device_uid=device_uid,
        tenant_id=tenant_id,
        username=username,
        ip_address=ip_address,
        type=type,
        term=term,
        started_at=now,
        last_seen=now,
        event_types=[],
        event_seats=[],
    )
    session.add(row)
    session.add(ActiveSession(uid=uid, tenant_id=tenant_id, last_seen=now))
    await session.flush()
    return row


async def update_session(session: AsyncSession, uid: str, values: dict[str, Any]) -> None:
    if not values:
        if await get_session_row(session, uid) is None:
            raise NotFoundError("session", uid)
        return
    result = await session.execute(
        update(Session).where(Session.uid == uid).values(**values).execution_options(**BULK)
    )
    require_rows(result, "session", uid)


async def touch_active(session: AsyncSession, uid: str, tenant_id: str, now: datetime) -> None:
    await session.execute(delete(ActiveSession).where(ActiveSession.uid == uid).execution_options(**BULK))
    await session.execute(
        insert(ActiveSession).values(uid=uid, tenant_id=tenant_id, last_seen=now)
    )


async def mark_closed(session: AsyncSession, uid: str, now: datetime) -> bool:
    # An already closed session keeps the last_seen it was closed with.
    result = await session.execute(
        update(Session)
        .where(Session.uid == uid, Session.closed.is_(False))
        .values(closed=True, last_seen=now)
        .execution_options(**BULK)
    )
    if result.rowcount:
        return True
    if await get_session_row(session, uid) is None:
        raise NotFoundError("session", uid)
    return False


async def delete_active(session: AsyncSession, uid: str) -> int:
    result = await session.execute(
        delete(ActiveSession).where(ActiveSession.uid == uid).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def add_event(
    session: AsyncSession,
    *,
    uid: str,
    type: str,
    seat: int,
    now: datetime,
    data: dict[str, Any] | None = None,
) -> SessionEvent:
    row = await get_session_row(session, uid)
    if row is None:
        raise NotFoundError("session", uid)
    event = SessionEvent(
        session_uid=uid,
        tenant_id=row.tenant_id,
        type=type,
        seat=seat,
        timestamp=now,
        data=data,
    )
    session.add(event)
    # Event types and seats behave as sets on the session.
    types = sorted(set(row.event_types or []) | {type})
    seats = sorted(set(row.event_seats or []) | {seat})
    await session.execute(
        update(Session)
        .where(Session.uid == uid)
        .values(event_types=types, event_seats=seats)
        .execution_options(**BULK)
    )
    await session.flush()
    return event


async def list_events(
    session: AsyncSession,
    uid: str,
    *,
    event_type: str | None = None,
    seat: int | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> tuple[list[SessionEvent], int]:
    criteria = [SessionEvent.session_uid == uid]
    if event_type is not None:
        criteria.append(SessionEvent.type == event_type)
    if seat is not None:
        criteria.append(SessionEvent.seat == seat)
    total = int(
        (await session.execute(select(func.count()).select_from(SessionEvent).where(*criteria))).scalar() or 0
    )
    stmt = select(SessionEvent).where(*criteria).order_by(SessionEvent.timestamp, SessionEvent.id).offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list((await session.execute(stmt)).scalars().all()), total


async def add_frame(
    session: AsyncSession,
    *,
    uid: str,
    tenant_id: str,
    message: str,
    width: int,
    height: int,
    now: datetime,
) -> RecordedFrame:
    frame = RecordedFrame(
        session_uid=uid, tenant_id=tenant_id, message=message, width=width, height=height, time=now
    )
    session.add(frame)
    await session.flush()
    return frame


async def list_frames(session: AsyncSession, uid: str) -> list[RecordedFrame]:
    result = await session.execute(
        select(RecordedFrame).where(RecordedFrame.session_uid == uid).order_by(RecordedFrame.time, RecordedFrame.id)
    )
    return list(result.scalars().all())


async def delete_frames(session: AsyncSession, uid: str) -> int:
    result = await session.execute(
        delete(RecordedFrame).where(RecordedFrame.session_uid == uid).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_for_device(session: AsyncSession, uid: str, tenant_id: str) -> int:
    session_uids = select(Session.uid).where(Session.device_uid == uid, tenant_predicate(Session, tenant_id))
    await session.execute(
        delete(ActiveSession).where(ActiveSession.uid.in_(session_uids)).execution_options(**BULK)
    )
    await session.execute(
        delete(SessionEvent).where(SessionEvent.session_uid.in_(session_uids)).execution_options(**BULK)
    )
    await session.execute(
        delete(RecordedFrame).where(RecordedFrame.session_uid.in_(session_uids)).execution_options(**BULK)
    )
    result = await session.execute(
        delete(Session)
        .where(Session.device_uid == uid, tenant_predicate(Session, tenant_id))
        .execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    await session.execute(
        delete(SessionEvent).where(tenant_predicate(SessionEvent, tenant_id)).execution_options(**BULK)
    )
    result = await session.execute(
        delete(Session).where(tenant_predicate(Session, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_active_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(ActiveSession).where(tenant_predicate(ActiveSession, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)


async def delete_frames_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        delete(RecordedFrame).where(tenant_predicate(RecordedFrame, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)
