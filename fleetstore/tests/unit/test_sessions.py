from __future__ import annotations

from uuid import uuid4

import pytest

from fleetstore.core.errors import FilterParseError, NotFoundError
from fleetstore.domain.changes import SessionChanges
from fleetstore.persistence.query import match_filters, match_tenant
from fleetstore.persistence.resolvers import SessionResolver
from fleetstore.tests.utils.factories import create_device, create_namespace


async def _open_session(store):
    _owner, namespace = await create_namespace(store)
    device = await create_device(store, namespace.tenant_id, "edge")
    session = await store.session_create(
        uid=uuid4().hex, device_uid=device.uid, username="root", ip_address="10.0.0.5"
    )
    return namespace, device, session


@pytest.mark.asyncio
async def test_session_inherits_device_tenant_and_starts_active(store) -> None:
    namespace, device, session = await _open_session(store)
    assert session.tenant_id == namespace.tenant_id
    assert session.active is True
    assert session.device_name == device.name

    resolved = await store.session_resolve(SessionResolver.UID, session.uid, match_tenant(namespace.tenant_id))
    assert resolved.active is True
    assert resolved.closed is False


@pytest.mark.asyncio
async def test_session_for_unknown_device_is_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        await store.session_create(uid=uuid4().hex, device_uid="missing")


@pytest.mark.asyncio
async def test_keepalive_and_close(store, clock) -> None:
    namespace, _device, session = await _open_session(store)

    clock.advance(30)
    assert await store.session_keepalive(session.uid) is True
    resolved = await store.session_resolve(SessionResolver.UID, session.uid)
    assert resolved.last_seen == clock.now()

    clock.advance(30)
    await store.session_close(session.uid)
    closed = await store.session_resolve(SessionResolver.UID, session.uid)
    assert closed.closed is True
    assert closed.active is False
    assert closed.last_seen == clock.now()

    # A closed session is history; keep-alives no longer revive it.
    assert await store.session_keepalive(session.uid) is False

    filters = [{"type": "property", "params": {"name": "active", "operator": "bool", "value": "false"}}]
    rows, total = await store.session_list(match_tenant(namespace.tenant_id), match_filters(filters))
    assert total == 1
    assert rows[0].uid == session.uid


@pytest.mark.asyncio
async def test_close_of_unknown_session_is_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        await store.session_close("missing")


@pytest.mark.asyncio
async def test_closing_twice_keeps_the_first_close_time(store, clock) -> None:
    _namespace, _device, session = await _open_session(store)
    await store.session_close(session.uid)
    closed_at = clock.now()

    clock.advance(300)
    await store.session_close(session.uid)
    closed = await store.session_resolve(SessionResolver.UID, session.uid)
    assert closed.closed is True
    assert closed.last_seen == closed_at


@pytest.mark.asyncio
async def test_active_filter_values_are_checked_when_parsed(store) -> None:
    namespace, _device, session = await _open_session(store)
    bogus = [{"type": "property", "params": {"name": "active", "operator": "eq", "value": "maybe"}}]
    with pytest.raises(FilterParseError):
        match_filters(bogus)

    filters = [{"type": "property", "params": {"name": "active", "operator": "eq", "value": "true"}}]
    rows, total = await store.session_list(match_tenant(namespace.tenant_id), match_filters(filters))
    assert total == 1
    assert rows[0].uid == session.uid


@pytest.mark.asyncio
async def test_events_keep_types_and_seats_as_sets(store, clock) -> None:
    _namespace, _device, session = await _open_session(store)
    await store.session_event_create(session.uid, "pty-req", seat=0)
    clock.advance(1)
    await store.session_event_create(session.uid, "exec", seat=1, data={"command": "ls"})
    clock.advance(1)
    await store.session_event_create(session.uid, "pty-req", seat=1)

    resolved = await store.session_resolve(SessionResolver.UID, session.uid)
    assert resolved.event_types == ["exec", "pty-req"]
    assert resolved.event_seats == [0, 1]

    events, total = await store.session_event_list(session.uid)
    assert total == 3
    assert [event.type for event in events] == ["pty-req", "exec", "pty-req"]

    seat_one, total = await store.session_event_list(session.uid, seat=1, page=1, per_page=1)
    assert total == 2
    assert len(seat_one) == 1
    assert seat_one[0].data == {"command": "ls"}

    with pytest.raises(NotFoundError):
        await store.session_event_create("missing", "exec")


@pytest.mark.asyncio
async def test_recorded_frames_flag_the_session(store) -> None:
    _namespace, _device, session = await _open_session(store)
    await store.record_frame_create(session.uid, "hello", width=80, height=24)
    await store.record_frame_create(session.uid, "world", width=80, height=24)

    assert (await store.session_resolve(SessionResolver.UID, session.uid)).recorded is True
    frames = await store.record_frame_list(session.uid)
    assert [frame.message for frame in frames] == ["hello", "world"]

    assert await store.record_frame_delete(session.uid) == 2
    assert await store.record_frame_list(session.uid) == []
    assert (await store.session_resolve(SessionResolver.UID, session.uid)).recorded is False


@pytest.mark.asyncio
async def test_session_update_applies_only_set_fields(store) -> None:
    _namespace, _device, session = await _open_session(store)
    await store.session_update(session.uid, SessionChanges(authenticated=True))
    resolved = await store.session_resolve(SessionResolver.UID, session.uid)
    assert resolved.authenticated is True
    assert resolved.type == "shell"

    with pytest.raises(NotFoundError):
        await store.session_update("missing", SessionChanges(authenticated=True))
    with pytest.raises(NotFoundError):
        await store.session_update("missing", SessionChanges())
