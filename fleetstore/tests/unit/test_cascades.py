from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import select

from fleetstore.core.errors import ConflictError, NotFoundError, TransactionAbortedError
from fleetstore.domain.changes import UserChanges
from fleetstore.domain.models import Tunnel
from fleetstore.persistence.query import match_tenant
from fleetstore.persistence.repos import devices as devices_repo
from fleetstore.persistence.repos import sessions as sessions_repo
from fleetstore.persistence.repos import tags as tags_repo
from fleetstore.persistence.resolvers import NamespaceResolver, UserResolver
from fleetstore.tests.utils.factories import create_device, create_namespace, create_owner


async def _open_tunnel(session_factory, clock, tenant_id: str, device_uid: str, address: str) -> None:
    async with session_factory() as session:
        async with session.begin():
            await devices_repo.create_tunnel(
                session, address=address, tenant_id=tenant_id, device_uid=device_uid, now=clock.now()
            )


async def _tunnel_addresses(session_factory, tenant_id: str) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(
            select(Tunnel.address).where(Tunnel.tenant_id == tenant_id).order_by(Tunnel.address)
        )
        return list(result.scalars().all())


async def _populated_namespace(store):
    owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "gateway", tags=("prod",))
    await store.session_create(uid=uuid4().hex, device_uid=device.uid, username="root")
    await store.firewall_rule_create(tenant_id=tenant_id, priority=1, filter_tags=("prod",))
    await store.public_key_create(tenant_id=tenant_id, fingerprint="aa:bb", data="ssh-ed25519 AAAA")
    return owner, namespace, device


@pytest.mark.asyncio
async def test_namespace_delete_removes_everything_scoped_to_the_tenant(store, session_factory, clock) -> None:
    owner, namespace, device = await _populated_namespace(store)
    tenant_id = namespace.tenant_id
    await _open_tunnel(session_factory, clock, tenant_id, device.uid, "gateway.tunnel")
    await store.device_get(device.uid)

    await store.namespace_delete(tenant_id)

    with pytest.raises(NotFoundError):
        await store.namespace_get(tenant_id)
    with pytest.raises(NotFoundError):
        await store.device_get(device.uid)
    assert (await store.session_list(match_tenant(tenant_id)))[1] == 0
    assert (await store.firewall_rule_list(match_tenant(tenant_id)))[1] == 0
    assert (await store.public_key_list(match_tenant(tenant_id)))[1] == 0
    assert (await store.tag_list(match_tenant(tenant_id)))[1] == 0
    assert await _tunnel_addresses(session_factory, tenant_id) == []

    refreshed = await store.user_resolve(UserResolver.ID, owner.id)
    assert refreshed.namespaces == 0
    assert refreshed.namespaces_owned == 0


@pytest.mark.asyncio
async def test_namespace_delete_is_all_or_nothing(store, monkeypatch: pytest.MonkeyPatch) -> None:
    owner, namespace, device = await _populated_namespace(store)
    tenant_id = namespace.tenant_id

    async def _fail(session, tenant_id):  # noqa: ANN001, ANN202
        raise RuntimeError("injected failure")

    monkeypatch.setattr(sessions_repo, "delete_for_tenant", _fail)

    with pytest.raises(TransactionAbortedError) as excinfo:
        await store.namespace_delete(tenant_id)
    assert excinfo.value.cascade == "namespace_delete"
    assert excinfo.value.step == "sessions"
    assert isinstance(excinfo.value.cause, RuntimeError)

    # Steps before the failure (namespace row, members, devices) were rolled back.
    restored = await store.namespace_resolve(NamespaceResolver.TENANT_ID, tenant_id)
    assert restored.owner == owner.id
    assert [member.user_id for member in restored.members] == [owner.id]
    devices, total = await store.device_list(match_tenant(tenant_id))
    assert total == 1
    assert devices[0].uid == device.uid
    assert (await store.firewall_rule_list(match_tenant(tenant_id)))[1] == 1
    assert (await store.user_resolve(UserResolver.ID, owner.id)).namespaces == 1


@pytest.mark.asyncio
async def test_namespace_delete_of_missing_tenant_is_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        await store.namespace_delete("missing-tenant")


@pytest.mark.asyncio
async def test_device_delete_cascades_and_moves_counters(store, session_factory, clock) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "edge", tags=("prod",))
    other = await create_device(store, tenant_id, "other")
    await _open_tunnel(session_factory, clock, tenant_id, device.uid, "edge.tunnel")
    await _open_tunnel(session_factory, clock, tenant_id, other.uid, "other.tunnel")
    session = await store.session_create(uid=uuid4().hex, device_uid=device.uid)
    assert (await store.namespace_get(tenant_id)).devices_pending_count == 2

    await store.device_delete(device.uid, tenant_id)

    with pytest.raises(NotFoundError):
        await store.device_get(device.uid)
    with pytest.raises(NotFoundError):
        await store.session_keepalive(session.uid)
    assert (await store.namespace_get(tenant_id)).devices_pending_count == 1
    assert await _tunnel_addresses(session_factory, tenant_id) == ["other.tunnel"]


@pytest.mark.asyncio
async def test_device_delete_with_zero_rows_is_not_found(store) -> None:
    _owner, namespace = await create_namespace(store)
    with pytest.raises(NotFoundError):
        await store.device_delete("no-such-device", namespace.tenant_id)


@pytest.mark.asyncio
async def test_device_delete_from_another_tenant_is_not_found(store) -> None:
    _owner, first = await create_namespace(store)
    _owner, second = await create_namespace(store)
    device = await create_device(store, first.tenant_id, "shared-name")
    with pytest.raises(NotFoundError):
        await store.device_delete(device.uid, second.tenant_id)
    assert (await store.device_get(device.uid)).uid == device.uid


@pytest.mark.asyncio
async def test_tag_rename_touches_every_entity_kind(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    first = await create_device(store, tenant_id, "one", tags=("prod",))
    await create_device(store, tenant_id, "two", tags=("prod", "edge"))
    await create_device(store, tenant_id, "three", tags=("edge",))
    rule = await store.firewall_rule_create(tenant_id=tenant_id, priority=1, filter_tags=("prod",))
    await store.public_key_create(
        tenant_id=tenant_id, fingerprint="aa:bb", data="ssh-ed25519 AAAA", filter_tags=("prod",)
    )
    await store.device_get(first.uid)

    modified = await store.tag_rename(tenant_id, "prod", "production")
    assert modified == 4

    # Cached device was invalidated before the rename returned.
    assert (await store.device_get(first.uid)).tags == ["production"]
    rules, _ = await store.firewall_rule_list(match_tenant(tenant_id))
    assert rules[0].id == rule.id
    assert rules[0].filter_tags == ["production"]
    keys, _ = await store.public_key_list(match_tenant(tenant_id))
    assert keys[0].filter_tags == ["production"]
    tags, _ = await store.tag_list(match_tenant(tenant_id))
    assert sorted(tag.name for tag in tags) == ["edge", "production"]

    # Renaming a tag nobody uses is a successful no-op.
    assert await store.tag_rename(tenant_id, "prod", "production") == 0


@pytest.mark.asyncio
async def test_tag_rename_merges_into_an_existing_tag(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "both", tags=("old", "new"))

    assert await store.tag_rename(tenant_id, "old", "new") == 1
    assert (await store.device_get(device.uid)).tags == ["new"]


@pytest.mark.asyncio
async def test_tag_rename_is_atomic_across_tables(store, monkeypatch: pytest.MonkeyPatch) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "one", tags=("prod",))
    await store.firewall_rule_create(tenant_id=tenant_id, priority=1, filter_tags=("prod",))

    async def _fail(session, tenant_id, old, new):  # noqa: ANN001, ANN202
        raise RuntimeError("tag table unavailable")

    monkeypatch.setattr(tags_repo, "rename_definition", _fail)

    with pytest.raises(TransactionAbortedError) as excinfo:
        await store.tag_rename(tenant_id, "prod", "production")
    assert excinfo.value.step == "tag"
    assert (await store.device_get(device.uid)).tags == ["prod"]
    rules, _ = await store.firewall_rule_list(match_tenant(tenant_id))
    assert rules[0].filter_tags == ["prod"]


@pytest.mark.asyncio
async def test_tag_delete_removes_the_tag_everywhere(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "one", tags=("prod", "edge"))
    await store.public_key_create(
        tenant_id=tenant_id, fingerprint="aa:bb", data="ssh-ed25519 AAAA", filter_tags=("prod",)
    )

    assert await store.tag_delete(tenant_id, "prod") == 2
    assert (await store.device_get(device.uid)).tags == ["edge"]
    assert await store.tag_delete(tenant_id, "prod") == 0


@pytest.mark.asyncio
async def test_tag_operations_stay_inside_the_tenant(store) -> None:
    _owner, first = await create_namespace(store)
    _owner, second = await create_namespace(store)
    await create_device(store, first.tenant_id, "a", tags=("prod",))
    other = await create_device(store, second.tenant_id, "b", tags=("prod",))

    assert await store.tag_rename(first.tenant_id, "prod", "live") == 1
    assert (await store.device_get(other.uid)).tags == ["prod"]


@pytest.mark.asyncio
async def test_remove_member_clears_preferred_namespace(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    member = await create_owner(store, "operator")
    await store.namespace_add_member(tenant_id, member.id, "operator")
    await store.user_update(member.id, UserChanges(preferred_namespace=tenant_id))

    await store.namespace_remove_member(tenant_id, member.id)

    refreshed = await store.user_resolve(UserResolver.ID, member.id)
    assert refreshed.preferred_namespace is None
    assert [m.user_id for m in (await store.namespace_get(tenant_id)).members] == [namespace.owner]


@pytest.mark.asyncio
async def test_owner_cannot_be_removed_or_duplicated(store) -> None:
    owner, namespace = await create_namespace(store)
    other = await create_owner(store)
    with pytest.raises(ConflictError) as excinfo:
        await store.namespace_remove_member(namespace.tenant_id, owner.id)
    assert excinfo.value.fields == ["role"]
    with pytest.raises(ConflictError):
        await store.namespace_add_member(namespace.tenant_id, other.id, "owner")


@pytest.mark.asyncio
async def test_user_delete_removes_owned_namespaces(store) -> None:
    owner, namespace = await create_namespace(store)
    await create_device(store, namespace.tenant_id, "orphan")

    await store.user_delete(owner.id)

    with pytest.raises(NotFoundError):
        await store.namespace_get(namespace.tenant_id)
    with pytest.raises(NotFoundError):
        await store.user_resolve(UserResolver.ID, owner.id)
    assert (await store.device_list(match_tenant(namespace.tenant_id)))[1] == 0
