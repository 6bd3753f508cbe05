from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.persistence import presence
from fleetstore.persistence.repos import api_keys as api_keys_repo
from fleetstore.persistence.repos import devices as devices_repo
from fleetstore.persistence.repos import firewall_rules as firewall_rules_repo
from fleetstore.persistence.repos import namespaces as namespaces_repo
from fleetstore.persistence.repos import public_keys as public_keys_repo
from fleetstore.persistence.repos import sessions as sessions_repo
from fleetstore.persistence.repos import tags as tags_repo
from fleetstore.persistence.repos import users as users_repo
from fleetstore.persistence.transactions import CascadeStep, run_cascade


# Step functions are looked up on their modules at run time so each step can be
# swapped for fault injection without rebuilding the cascade.


async def delete_namespace(session: AsyncSession, tenant_id: str) -> str:
    namespace = await namespaces_repo.get_namespace(session, tenant_id)
    if namespace is None:
        raise NotFoundError("namespace", tenant_id)
    owner = namespace.owner
    steps = [
        CascadeStep("namespace", lambda s: namespaces_repo.delete_namespace_row(s, tenant_id)),
        CascadeStep("members", lambda s: namespaces_repo.delete_members_for_tenant(s, tenant_id)),
        CascadeStep("devices", lambda s: devices_repo.delete_for_tenant(s, tenant_id)),
        CascadeStep("sessions", lambda s: sessions_repo.delete_for_tenant(s, tenant_id)),
        CascadeStep("active_sessions", lambda s: sessions_repo.delete_active_for_tenant(s, tenant_id)),
        CascadeStep("connected_devices", lambda s: devices_repo.delete_connected_for_tenant(s, tenant_id)),
        CascadeStep("firewall_rules", lambda s: firewall_rules_repo.delete_for_tenant(s, tenant_id)),
        CascadeStep("public_keys", lambda s: public_keys_repo.delete_for_tenant(s, tenant_id)),
        CascadeStep("recorded_sessions", lambda s: sessions_repo.delete_frames_for_tenant(s, tenant_id)),
        CascadeStep("tunnels", lambda s: devices_repo.delete_tunnels_for_tenant(s, tenant_id)),
        CascadeStep("api_keys", lambda s: api_keys_repo.delete_for_tenant(s, tenant_id)),
        CascadeStep("tags", lambda s: tags_repo.delete_for_tenant(s, tenant_id)),
        CascadeStep("preferred_namespace", lambda s: namespaces_repo.clear_preferred_namespace(s, tenant_id)),
        CascadeStep("owner_counter", lambda s: users_repo.increment_namespaces(s, owner, -1)),
    ]
    await run_cascade(session, "namespace_delete", steps)
    return owner


async def delete_device(session: AsyncSession, uid: str, tenant_id: str) -> str:
    device = await devices_repo.get_device(session, uid)
    if device is None or device.tenant_id != tenant_id:
        raise NotFoundError("device", uid)
    status = device.status
    steps = [
        CascadeStep("device_tags", lambda s: devices_repo.delete_device_tags(s, uid, tenant_id)),
        CascadeStep("device", lambda s: devices_repo.delete_device_row(s, uid, tenant_id)),
        CascadeStep("sessions", lambda s: sessions_repo.delete_for_device(s, uid, tenant_id)),
        CascadeStep("tunnels", lambda s: devices_repo.delete_tunnels_for_device(s, uid, tenant_id)),
        CascadeStep("connected_device", lambda s: devices_repo.delete_connected(s, uid)),
        CascadeStep("counter", lambda s: presence.increment_device_count(s, tenant_id, status, -1)),
    ]
    await run_cascade(session, "device_delete", steps)
    return status


async def remove_member(session: AsyncSession, tenant_id: str, user_id: str) -> None:
    steps = [
        CascadeStep("member", lambda s: namespaces_repo.delete_member_row(s, tenant_id, user_id)),
        CascadeStep(
            "preferred_namespace",
            lambda s: namespaces_repo.clear_preferred_namespace(s, tenant_id, user_id),
        ),
    ]
    await run_cascade(session, "namespace_remove_member", steps)


async def rename_tag(session: AsyncSession, tenant_id: str, old: str, new: str) -> int:
    if old == new:
        return 0
    steps = [
        CascadeStep(f"{table.name}_tags", _rename_step(table, tenant_id, old, new))
        for table in tags_repo.TAG_TABLES
    ]
    steps.append(CascadeStep("tag", lambda s: tags_repo.rename_definition(s, tenant_id, old, new)))
    results = await run_cascade(session, "tag_rename", steps)
    return sum(results[:-1])


async def delete_tag(session: AsyncSession, tenant_id: str, name: str) -> int:
    steps = [
        CascadeStep(f"{table.name}_tags", _delete_step(table, tenant_id, name))
        for table in tags_repo.TAG_TABLES
    ]
    steps.append(CascadeStep("tag", lambda s: tags_repo.delete_definition(s, tenant_id, name)))
    results = await run_cascade(session, "tag_delete", steps)
    return sum(results[:-1])


def _rename_step(table: tags_repo.TagTable, tenant_id: str, old: str, new: str):  # noqa: ANN202
    return lambda s: tags_repo.rename_in_table(s, table, tenant_id, old, new)


def _delete_step(table: tags_repo.TagTable, tenant_id: str, name: str):  # noqa: ANN202
    return lambda s: tags_repo.delete_in_table(s, table, tenant_id, name)


async def close_session(session: AsyncSession, uid: str, now: datetime) -> None:
    steps = [
        CascadeStep("session", lambda s: sessions_repo.mark_closed(s, uid, now)),
        CascadeStep("active_session", lambda s: sessions_repo.delete_active(s, uid)),
    ]
    await run_cascade(session, "session_close", steps)


async def delete_user(session: AsyncSession, user_id: str) -> list[str]:
    tenants = await namespaces_repo.owned_tenants(session, user_id)
    for tenant_id in tenants:
        await delete_namespace(session, tenant_id)
    steps = [
        CascadeStep("memberships", lambda s: namespaces_repo.delete_memberships_for_user(s, user_id)),
        CascadeStep("user", lambda s: users_repo.delete_user_row(s, user_id)),
    ]
    await run_cascade(session, "user_delete", steps)
    return tenants
