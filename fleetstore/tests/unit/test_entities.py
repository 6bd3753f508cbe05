from __future__ import annotations

from datetime import timedelta

import pytest

from fleetstore.core.errors import ConflictError, InvalidIdentifierError, NotFoundError
from fleetstore.domain.changes import (
    APIKeyChanges,
    DeviceChanges,
    FirewallRuleChanges,
    MemberChanges,
    PublicKeyChanges,
    UserChanges,
)
from fleetstore.persistence.query import match, match_filters, match_tenant, sort
from fleetstore.persistence.resolvers import APIKeyResolver, PublicKeyResolver, UserResolver
from fleetstore.tests.utils.factories import create_device, create_namespace, create_owner


@pytest.mark.asyncio
async def test_device_tags_push_pull_and_replace(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "edge")

    assert await store.device_push_tag(tenant_id, device.uid, "prod") is True
    assert await store.device_push_tag(tenant_id, device.uid, "prod") is False
    assert (await store.device_get(device.uid)).tags == ["prod"]

    assert await store.device_set_tags(tenant_id, device.uid, ["b", "a", "b"]) == ["a", "b"]
    assert (await store.device_get(device.uid)).tags == ["a", "b"]

    await store.device_pull_tag(tenant_id, device.uid, "a")
    assert (await store.device_get(device.uid)).tags == ["b"]
    with pytest.raises(NotFoundError):
        await store.device_pull_tag(tenant_id, device.uid, "a")
    with pytest.raises(NotFoundError):
        await store.device_push_tag(tenant_id, "missing", "prod")

    # Pushed tags join the tenant tag universe.
    tags, _ = await store.tag_list(match_tenant(tenant_id), sort("name", "asc"))
    assert [tag.name for tag in tags] == ["a", "b", "prod"]


@pytest.mark.asyncio
async def test_tag_create_is_idempotent(store) -> None:
    _owner, namespace = await create_namespace(store)
    first = await store.tag_create(namespace.tenant_id, "prod")
    second = await store.tag_create(namespace.tenant_id, "prod")
    assert first.id == second.id


@pytest.mark.asyncio
async def test_device_update_and_missing_targets(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    device = await create_device(store, tenant_id, "edge", mac="aa:bb")

    await store.device_update(device.uid, tenant_id, DeviceChanges(mac="cc:dd", remote_addr="10.0.0.9"))
    refreshed = await store.device_get(device.uid)
    assert refreshed.mac == "cc:dd"
    assert refreshed.remote_addr == "10.0.0.9"

    with pytest.raises(NotFoundError):
        await store.device_update("missing", tenant_id, DeviceChanges(mac="x"))
    with pytest.raises(NotFoundError):
        await store.device_update("missing", tenant_id, DeviceChanges())


@pytest.mark.asyncio
async def test_firewall_rule_lifecycle(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    rule = await store.firewall_rule_create(tenant_id=tenant_id, priority=1, action="deny", username="root")

    await store.firewall_rule_update(tenant_id, rule.id, FirewallRuleChanges(active=False, priority=2))
    assert await store.firewall_rule_push_tag(tenant_id, rule.id, "prod") is True
    rows, _ = await store.firewall_rule_list(match_tenant(tenant_id))
    assert rows[0].active is False
    assert rows[0].priority == 2
    assert rows[0].filter_tags == ["prod"]

    filters = [{"type": "property", "params": {"name": "filter.tags", "operator": "contains", "value": "prod"}}]
    assert (await store.firewall_rule_list(match_tenant(tenant_id), match_filters(filters)))[1] == 1

    await store.firewall_rule_pull_tag(tenant_id, rule.id, "prod")
    await store.firewall_rule_delete(tenant_id, rule.id)
    assert (await store.firewall_rule_list(match_tenant(tenant_id)))[1] == 0
    with pytest.raises(NotFoundError):
        await store.firewall_rule_delete(tenant_id, rule.id)
    with pytest.raises(InvalidIdentifierError):
        await store.firewall_rule_delete(tenant_id, "not-a-uuid")


@pytest.mark.asyncio
async def test_public_key_lifecycle(store) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    await store.public_key_create(tenant_id=tenant_id, fingerprint="aa:bb", data="ssh-ed25519 AAAA", name="laptop")

    await store.public_key_update(tenant_id, "aa:bb", PublicKeyChanges(name="desktop", filter_hostname="web-.*"))
    assert await store.public_key_push_tag(tenant_id, "aa:bb", "prod") is True
    key = await store.public_key_resolve(PublicKeyResolver.FINGERPRINT, "aa:bb", match_tenant(tenant_id))
    assert key.name == "desktop"
    assert key.filter_hostname == "web-.*"
    assert key.filter_tags == ["prod"]

    await store.public_key_pull_tag(tenant_id, "aa:bb", "prod")
    await store.public_key_delete(tenant_id, "aa:bb")
    with pytest.raises(NotFoundError):
        await store.public_key_delete(tenant_id, "aa:bb")
    with pytest.raises(NotFoundError):
        await store.public_key_push_tag(tenant_id, "aa:bb", "prod")


@pytest.mark.asyncio
async def test_public_key_tag_filter_is_tenant_scoped(store) -> None:
    _owner_a, first = await create_namespace(store)
    _owner_b, second = await create_namespace(store)
    await store.public_key_create(tenant_id=first.tenant_id, fingerprint="aa:bb", data="ssh-ed25519 AAAA")
    await store.public_key_create(tenant_id=second.tenant_id, fingerprint="aa:bb", data="ssh-ed25519 BBBB")
    await store.public_key_push_tag(first.tenant_id, "aa:bb", "prod")

    filters = [{"type": "property", "params": {"name": "filter.tags", "operator": "contains", "value": ["prod"]}}]
    rows, total = await store.public_key_list(match_tenant(second.tenant_id), match_filters(filters))
    assert (rows, total) == ([], 0)
    rows, total = await store.public_key_list(match_tenant(first.tenant_id), match_filters(filters))
    assert total == 1
    assert rows[0].filter_tags == ["prod"]


@pytest.mark.asyncio
async def test_api_key_update_stamps_updated_at(store, clock) -> None:
    owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    created = await store.api_key_create(key_id="key-1", tenant_id=tenant_id, name="ci", created_by=owner.id)

    clock.advance(60)
    expires = clock.now() + timedelta(days=30)
    await store.api_key_update(tenant_id, "key-1", APIKeyChanges(name="deploy", expires_at=expires))
    updated = await store.api_key_resolve(APIKeyResolver.ID, "key-1", match_tenant(tenant_id))
    assert updated.name == "deploy"
    assert updated.expires_at == expires
    assert updated.updated_at == clock.now()
    assert updated.created_at == created.created_at

    rows, total = await store.api_key_list(match_tenant(tenant_id), sort("expires_at", "asc"))
    assert total == 1
    assert rows[0].id == "key-1"

    await store.api_key_delete(tenant_id, "key-1")
    with pytest.raises(NotFoundError):
        await store.api_key_update(tenant_id, "key-1", APIKeyChanges())


@pytest.mark.asyncio
async def test_user_update_and_list(store) -> None:
    alice = await store.user_create(username="alice", email="alice@example.com")
    await store.user_create(username="bob", email="bob@example.com", status="not-confirmed")

    await store.user_update(alice.id, UserChanges(name="Alice", max_namespaces=3))
    refreshed = await store.user_resolve(UserResolver.ID, alice.id)
    assert refreshed.name == "Alice"
    assert refreshed.max_namespaces == 3

    rows, total = await store.user_list(match("status", "confirmed"))
    assert total == 1
    assert rows[0].username == "alice"

    with pytest.raises(InvalidIdentifierError):
        await store.user_update("bogus", UserChanges(name="x"))


@pytest.mark.asyncio
async def test_member_role_changes(store) -> None:
    owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    member = await create_owner(store, "operator")
    added = await store.namespace_add_member(tenant_id, member.id, "observer")
    assert added.role == "observer"

    await store.namespace_update_member(tenant_id, member.id, MemberChanges(role="administrator"))
    members = {m.user_id: m.role for m in (await store.namespace_get(tenant_id)).members}
    assert members == {owner.id: "owner", member.id: "administrator"}

    with pytest.raises(ConflictError):
        await store.namespace_update_member(tenant_id, member.id, MemberChanges(role="owner"))
    with pytest.raises(ConflictError):
        await store.namespace_update_member(tenant_id, owner.id, MemberChanges(role="observer"))
    with pytest.raises(NotFoundError):
        await store.namespace_update_member(tenant_id, "missing", MemberChanges(role="observer"))
    with pytest.raises(NotFoundError):
        await store.namespace_add_member("missing", member.id, "observer")
