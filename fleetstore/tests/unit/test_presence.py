from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fleetstore.core.errors import NotFoundError
from fleetstore.persistence.presence import is_online
from fleetstore.persistence.query import match_filters, match_tenant
from fleetstore.persistence.resolvers import DeviceResolver
from fleetstore.tests.utils.factories import create_device, create_namespace


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=2)


@pytest.mark.parametrize(
    ("last_seen", "disconnected_at", "expected"),
    [
        (NOW - timedelta(seconds=90), None, True),
        (NOW - timedelta(seconds=180), None, False),
        (NOW - timedelta(seconds=120), None, False),
        (NOW - timedelta(seconds=5), NOW - timedelta(seconds=1), False),
        (None, None, False),
    ],
)
def test_is_online_window(last_seen, disconnected_at, expected: bool) -> None:  # noqa: ANN001
    assert is_online(last_seen, disconnected_at, NOW, WINDOW) is expected


@pytest.mark.asyncio
async def test_online_is_recomputed_on_every_read(store, clock) -> None:
    _owner, namespace = await create_namespace(store)
    device = await create_device(store, namespace.tenant_id, "edge")

    clock.advance(90)
    assert (await store.device_get(device.uid)).online is True

    # Served from the cache now, yet presence still follows the clock.
    clock.advance(90)
    assert (await store.device_get(device.uid)).online is False

    await store.device_heartbeat([device.uid])
    assert (await store.device_get(device.uid)).online is True

    await store.device_set_offline(device.uid)
    assert (await store.device_get(device.uid)).online is False


@pytest.mark.asyncio
async def test_online_filter_and_list_flag_agree(store, clock) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    stale = await create_device(store, tenant_id, "stale")
    clock.advance(300)
    fresh = await create_device(store, tenant_id, "fresh")

    rows, _ = await store.device_list(match_tenant(tenant_id))
    flags = {row.uid: row.online for row in rows}
    assert flags == {stale.uid: False, fresh.uid: True}

    filters = [{"type": "property", "params": {"name": "online", "operator": "eq", "value": "true"}}]
    rows, total = await store.device_list(match_tenant(tenant_id), match_filters(filters))
    assert total == 1
    assert rows[0].uid == fresh.uid

    offline = [{"type": "property", "params": {"name": "online", "operator": "bool", "value": 0}}]
    rows, total = await store.device_list(match_tenant(tenant_id), match_filters(offline))
    assert total == 1
    assert rows[0].uid == stale.uid

    resolved = await store.device_resolve(DeviceResolver.UID, fresh.uid, match_tenant(tenant_id))
    assert resolved.online is True


@pytest.mark.asyncio
async def test_status_transitions_move_counters(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    first = await create_device(store, tenant_id, "one")
    await create_device(store, tenant_id, "two")

    snapshot = await store.namespace_get(tenant_id)
    assert snapshot.devices_pending_count == 2

    previous = await store.device_update_status(first.uid, tenant_id, "accepted")
    assert previous == "pending"
    snapshot = await store.namespace_get(tenant_id)
    assert snapshot.devices_pending_count == 1
    assert snapshot.devices_accepted_count == 1

    # Same-status transitions leave counters alone.
    assert await store.device_update_status(first.uid, tenant_id, "accepted") == "accepted"
    assert (await store.namespace_get(tenant_id)).devices_accepted_count == 1

    with pytest.raises(ValueError):
        await store.device_update_status(first.uid, tenant_id, "bogus")
    with pytest.raises(NotFoundError):
        await store.device_update_status("missing", tenant_id, "accepted")


@pytest.mark.asyncio
async def test_sync_repairs_counter_drift(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "one")
    await create_device(store, tenant_id, "two")
    await store.device_update_status(device.uid, tenant_id, "rejected")

    await store.namespace_increment_device_count(tenant_id, "accepted", 5)
    await store.namespace_increment_device_count(tenant_id, "pending", -3)
    drifted = await store.namespace_get(tenant_id)
    assert drifted.devices_accepted_count == 5

    repaired = await store.namespace_sync_device_counts(tenant_id)
    assert repaired == {tenant_id: {"accepted": 0, "pending": 1, "rejected": 1, "removed": 0}}

    snapshot = await store.namespace_get(tenant_id)
    assert snapshot.devices_accepted_count == 0
    assert snapshot.devices_pending_count == 1
    assert snapshot.devices_rejected_count == 1


@pytest.mark.asyncio
async def test_sync_covers_namespaces_without_devices(store) -> None:
    _owner, empty = await create_namespace(store)
    await store.namespace_increment_device_count(empty.tenant_id, "removed", 2)

    repaired = await store.namespace_sync_device_counts()
    assert repaired[empty.tenant_id]["removed"] == 0


@pytest.mark.asyncio
async def test_counter_increment_for_missing_namespace_is_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        await store.namespace_increment_device_count("missing", "accepted", 1)


@pytest.mark.asyncio
async def test_heartbeat_ignores_unknown_devices(store, clock) -> None:
    _owner, namespace = await create_namespace(store)
    device = await create_device(store, namespace.tenant_id, "one")
    clock.advance(600)

    updated = await store.device_heartbeat([device.uid, "unknown", device.uid])
    assert updated == 1
    assert (await store.device_get(device.uid)).last_seen == clock.now()
