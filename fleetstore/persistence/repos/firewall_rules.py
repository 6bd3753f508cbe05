from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import NotFoundError
from fleetstore.domain.models import FirewallRule, FirewallRuleTag
from fleetstore.persistence.guards import tenant_predicate
from fleetstore.persistence.query import QueryBuilder, QueryField, QuerySource
from fleetstore.persistence.repos import tags as tags_repo
from fleetstore.persistence.repos.base import BULK, fetch_one, fetch_page, require_rows


SOURCE = QuerySource(
    name="firewall_rule",
    model=FirewallRule,
    fields={
        "id": QueryField(FirewallRule.id),
        "tenant_id": QueryField(FirewallRule.tenant_id),
        "priority": QueryField(FirewallRule.priority),
        "action": QueryField(FirewallRule.action),
        "active": QueryField(FirewallRule.active),
        "source_ip": QueryField(FirewallRule.source_ip),
        "username": QueryField(FirewallRule.username),
        "hostname": QueryField(FirewallRule.filter_hostname),
        "tags": QueryField(
            contains_all=tags_repo.contains_all(
                tags_repo.FIREWALL_RULE_TAGS, FirewallRule.id, FirewallRule.tenant_id
            ),
            sortable=False,
        ),
    },
    # Rules evaluate in priority order, lowest first.
    default_sort="priority",
    default_order="asc",
    tiebreaker=FirewallRule.id,
    tenant_column=FirewallRule.tenant_id,
    aliases={"filter.hostname": "hostname", "filter.tags": "tags"},
)


async def list_rules(session: AsyncSession, builder: QueryBuilder):  # noqa: ANN201
    return await fetch_page(session, builder)


async def resolve_rule(session: AsyncSession, builder: QueryBuilder, predicate):  # noqa: ANN001, ANN201
    return await fetch_one(session, builder, predicate)


async def get_rule(session: AsyncSession, tenant_id: str, rule_id: str) -> FirewallRule | None:
    result = await session.execute(
        select(FirewallRule)
        .where(FirewallRule.id == rule_id, tenant_predicate(FirewallRule, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_rule(
    session: AsyncSession,
    *,
    tenant_id: str,
    priority: int,
    now: datetime,
    action: str = "allow",
    active: bool = True,
    source_ip: str = ".*",
    username: str = ".*",
    filter_hostname: str | None = None,
    filter_tags: Sequence[str] = (),
    rule_id: str | None = None,
) -> FirewallRule:
    rule = FirewallRule(
        id=rule_id or str(uuid.uuid4()),
        tenant_id=tenant_id,
        priority=priority,
        action=action,
        active=active,
        source_ip=source_ip,
        username=username,
        filter_hostname=filter_hostname,
    )
    session.add(rule)
    await session.flush()
    if filter_tags:
        await tags_repo.replace_owner_tags(
            session, tags_repo.FIREWALL_RULE_TAGS, tenant_id, rule.id, filter_tags, now
        )
    return rule


async def update_rule(session: AsyncSession, tenant_id: str, rule_id: str, values: dict[str, Any]) -> None:
    if not values:
        if await get_rule(session, tenant_id, rule_id) is None:
            raise NotFoundError("firewall_rule", rule_id)
        return
    result = await session.execute(
        update(FirewallRule)
        .where(FirewallRule.id == rule_id, tenant_predicate(FirewallRule, tenant_id))
        .values(**values)
        .execution_options(**BULK)
    )
    require_rows(result, "firewall_rule", rule_id)


async def delete_rule(session: AsyncSession, tenant_id: str, rule_id: str) -> None:
    await tags_repo.delete_owner_tags(session, tags_repo.FIREWALL_RULE_TAGS, tenant_id, rule_id)
    result = await session.execute(
        delete(FirewallRule)
        .where(FirewallRule.id == rule_id, tenant_predicate(FirewallRule, tenant_id))
        .execution_options(**BULK)
    )
    require_rows(result, "firewall_rule", rule_id)


async def delete_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    await session.execute(
        delete(FirewallRuleTag).where(tenant_predicate(FirewallRuleTag, tenant_id)).execution_options(**BULK)
    )
    result = await session.execute(
        delete(FirewallRule).where(tenant_predicate(FirewallRule, tenant_id)).execution_options(**BULK)
    )
    return int(result.rowcount or 0)
