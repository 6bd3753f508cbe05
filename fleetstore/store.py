from __future__ import annotations

import copy
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fleetstore.core.clock import Clock, SystemClock
from fleetstore.core.config import Settings, get_settings
from fleetstore.core.errors import NotFoundError, StoreUnavailableError
from fleetstore.domain.changes import (
    APIKeyChanges,
    DeviceChanges,
    FirewallRuleChanges,
    MemberChanges,
    NamespaceChanges,
    PublicKeyChanges,
    SessionChanges,
    SystemChanges,
    UserChanges,
    stamp,
)
from fleetstore.domain.records import (
    APIKeyRecord,
    DeviceRecord,
    FirewallRuleRecord,
    MemberRecord,
    NamespaceRecord,
    PublicKeyRecord,
    RecordedFrameRecord,
    SessionEventRecord,
    SessionRecord,
    SystemRecord,
    TagRecord,
    UserRecord,
)
from fleetstore.persistence import cascades, presence
from fleetstore.persistence.cache import Cache, CacheAside, NullCache, build_cache, cache_key
from fleetstore.persistence.db import build_engine, build_session_factory
from fleetstore.persistence.query import QueryBuilder, QueryOption, QuerySource, paginate
from fleetstore.persistence.repos import api_keys as api_keys_repo
from fleetstore.persistence.repos import devices as devices_repo
from fleetstore.persistence.repos import firewall_rules as firewall_rules_repo
from fleetstore.persistence.repos import namespaces as namespaces_repo
from fleetstore.persistence.repos import public_keys as public_keys_repo
from fleetstore.persistence.repos import sessions as sessions_repo
from fleetstore.persistence.repos import system as system_repo
from fleetstore.persistence.repos import tags as tags_repo
from fleetstore.persistence.repos import users as users_repo
from fleetstore.persistence.repos.api_keys import APIKeyConflicts
from fleetstore.persistence.repos.users import UserConflicts
from fleetstore.persistence.resolvers import (
    APIKeyResolver,
    DeviceResolver,
    FirewallRuleResolver,
    NamespaceResolver,
    PublicKeyResolver,
    SessionResolver,
    TagResolver,
    UserResolver,
    parse_uuid,
    resolver_predicate,
)
from fleetstore.persistence.transactions import CascadeStep, run_cascade, translate_error


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _namespace_key(tenant_id: str) -> str:
    return cache_key("namespace", tenant_id)


def _device_key(uid: str) -> str:
    return cache_key("device", uid)


SYSTEM_KEY = cache_key("system", "settings")


class Store:
    """Entry point for every read and write against the fleet database.

    A plain ``Store`` opens one transaction per call and invalidates cache
    entries after commit. ``with_transaction`` hands the callback a bound
    copy that shares a single session; its invalidations are flushed once
    the outer transaction commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cache: Cache | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._settings = settings or get_settings()
        self._cache = CacheAside(cache or NullCache(), default_ttl=self._settings.cache_default_ttl_s)
        self._clock = clock or SystemClock()
        self._window = timedelta(seconds=self._settings.presence_window_s)
        self._session: AsyncSession | None = None
        self._pending: list[str] | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, clock: Clock | None = None) -> "Store":
        settings = settings or get_settings()
        engine = build_engine(settings.database_url, settings)
        return cls(
            build_session_factory(engine),
            cache=build_cache(settings),
            clock=clock,
            settings=settings,
            engine=engine,
        )

    async def aclose(self) -> None:
        # Releases the Redis client and, when this store built it, the engine pool.
        await self._cache.close()
        if self._engine is not None:
            await self._engine.dispose()

    @property
    def clock(self) -> Clock:
        return self._clock

    # -- plumbing -----------------------------------------------------------

    def _bind(self, session: AsyncSession, pending: list[str]) -> "Store":
        bound = copy.copy(self)
        bound._session = session
        bound._pending = pending
        return bound

    @asynccontextmanager
    async def _unit(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            # Joined an outer transaction; the outer unit commits and translates.
            yield self._session
            return
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise translate_error(exc) from exc
        except OSError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def _invalidate(self, *keys: str) -> None:
        if self._pending is not None:
            self._pending.extend(keys)
            return
        for key in dict.fromkeys(keys):
            await self._cache.invalidate(key)

    def _builder(self, source: QuerySource, options: Sequence[QueryOption]) -> QueryBuilder:
        builder = QueryBuilder(source=source, now=self._clock.now(), presence_window=self._window)
        return builder.apply(*options)

    async def _cached(self, key: str, loader: Callable[[], Awaitable[T]], model: type[T]) -> T:
        if self._session is not None:
            # Inside a transaction the cache could hold pre-transaction state.
            return await loader()
        return await self._cache.get_or_load(key, loader, model)

    async def with_transaction(self, fn: Callable[["Store"], Awaitable[T]]) -> T:
        if self._session is not None:
            return await fn(self)
        pending: list[str] = []
        async with self._unit() as session:
            result = await fn(self._bind(session, pending))
        for key in dict.fromkeys(pending):
            await self._cache.invalidate(key)
        return result

    async def run_cascade(self, name: str, *steps: CascadeStep) -> list[Any]:
        async with self._unit() as session:
            return await run_cascade(session, name, steps)

    # -- namespaces ---------------------------------------------------------

    async def namespace_list(self, *options: QueryOption) -> tuple[list[NamespaceRecord], int]:
        builder = self._builder(namespaces_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await namespaces_repo.list_namespaces(session, builder)
            return [NamespaceRecord.model_validate(row[0]) for row in rows], total

    async def namespace_resolve(self, kind: NamespaceResolver, value: str, *options: QueryOption) -> NamespaceRecord:
        predicate = resolver_predicate(NamespaceResolver, kind, value)
        builder = self._builder(namespaces_repo.SOURCE, options)
        async with self._unit() as session:
            row = await namespaces_repo.resolve_namespace(session, builder, predicate)
            return NamespaceRecord.model_validate(row[0])

    async def namespace_get(self, tenant_id: str) -> NamespaceRecord:
        async def _load() -> NamespaceRecord:
            async with self._unit() as session:
                namespace = await namespaces_repo.get_namespace(session, tenant_id)
                if namespace is None:
                    raise NotFoundError("namespace", tenant_id)
                return NamespaceRecord.model_validate(namespace)

        return await self._cached(_namespace_key(tenant_id), _load, NamespaceRecord)

    async def namespace_create(
        self,
        *,
        tenant_id: str,
        name: str,
        owner: str,
        max_devices: int = -1,
        session_record: bool = True,
    ) -> NamespaceRecord:
        now = self._clock.now()
        async with self._unit() as session:
            await namespaces_repo.create_namespace(
                session,
                tenant_id=tenant_id,
                name=name,
                owner=owner,
                now=now,
                max_devices=max_devices,
                session_record=session_record,
            )
            await users_repo.increment_namespaces(session, owner, 1)
            namespace = await namespaces_repo.get_namespace(session, tenant_id)
            record = NamespaceRecord.model_validate(namespace)
        await self._invalidate(_namespace_key(tenant_id))
        return record

    async def namespace_update(self, tenant_id: str, changes: NamespaceChanges) -> None:
        async with self._unit() as session:
            await namespaces_repo.update_namespace(session, tenant_id, changes.as_values())
        await self._invalidate(_namespace_key(tenant_id))

    async def namespace_delete(self, tenant_id: str) -> None:
        async with self._unit() as session:
            uids = await devices_repo.tenant_device_uids(session, tenant_id)
            await cascades.delete_namespace(session, tenant_id)
        logger.info("namespace_deleted tenant_id=%s devices=%s", tenant_id, len(uids))
        await self._invalidate(_namespace_key(tenant_id), *(_device_key(uid) for uid in uids))

    async def namespace_add_member(
        self,
        tenant_id: str,
        user_id: str,
        role: str,
        *,
        status: str = "accepted",
        expires_at=None,  # noqa: ANN001
    ) -> MemberRecord:
        async with self._unit() as session:
            member = await namespaces_repo.add_member(
                session,
                tenant_id=tenant_id,
                user_id=user_id,
                role=role,
                now=self._clock.now(),
                status=status,
                expires_at=expires_at,
            )
            record = MemberRecord.model_validate(member)
        await self._invalidate(_namespace_key(tenant_id))
        return record

    async def namespace_update_member(self, tenant_id: str, user_id: str, changes: MemberChanges) -> None:
        async with self._unit() as session:
            await namespaces_repo.update_member(session, tenant_id, user_id, changes.as_values())
        await self._invalidate(_namespace_key(tenant_id))

    async def namespace_remove_member(self, tenant_id: str, user_id: str) -> None:
        async with self._unit() as session:
            await cascades.remove_member(session, tenant_id, user_id)
        await self._invalidate(_namespace_key(tenant_id))

    async def namespace_set_session_record(self, tenant_id: str, enabled: bool) -> None:
        await self.namespace_update(tenant_id, NamespaceChanges(session_record=enabled))

    async def namespace_get_session_record(self, tenant_id: str) -> bool:
        return (await self.namespace_get(tenant_id)).session_record

    async def namespace_increment_device_count(self, tenant_id: str, status: str, delta: int) -> None:
        async with self._unit() as session:
            await presence.increment_device_count(session, tenant_id, status, delta)
        await self._invalidate(_namespace_key(tenant_id))

    async def namespace_sync_device_counts(self, tenant_id: str | None = None) -> dict[str, dict[str, int]]:
        async with self._unit() as session:
            repaired = await presence.sync_device_counts(session, tenant_id)
        await self._invalidate(*(_namespace_key(tenant) for tenant in repaired))
        return repaired

    async def namespace_conflicts(self, name: str | None) -> tuple[list[str], bool]:
        async with self._unit() as session:
            return await namespaces_repo.namespace_conflicts(session, name)

    # -- devices ------------------------------------------------------------

    async def device_list(self, *options: QueryOption) -> tuple[list[DeviceRecord], int]:
        builder = self._builder(devices_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await devices_repo.list_devices(session, builder)
            records = [DeviceRecord.from_row(row[0], online=row.online, namespace=row.namespace) for row in rows]
            return records, total

    async def device_resolve(self, kind: DeviceResolver, value: str, *options: QueryOption) -> DeviceRecord:
        predicate = resolver_predicate(DeviceResolver, kind, value)
        builder = self._builder(devices_repo.SOURCE, options)
        async with self._unit() as session:
            row = await devices_repo.resolve_device(session, builder, predicate)
            return DeviceRecord.from_row(row[0], online=row.online, namespace=row.namespace)

    async def device_get(self, uid: str, tenant_id: str | None = None) -> DeviceRecord:
        async def _load() -> DeviceRecord:
            async with self._unit() as session:
                device = await devices_repo.get_device(session, uid)
                if device is None:
                    raise NotFoundError("device", uid)
                return DeviceRecord.from_row(device)

        record = await self._cached(_device_key(uid), _load, DeviceRecord)
        if tenant_id and record.tenant_id != tenant_id:
            raise NotFoundError("device", uid)
        # Presence is never served from the cache.
        online = presence.is_online(record.last_seen, record.disconnected_at, self._clock.now(), self._window)
        return record.model_copy(update={"online": online})

    async def device_create(
        self,
        *,
        uid: str,
        tenant_id: str,
        name: str,
        mac: str | None = None,
        info: dict[str, Any] | None = None,
        remote_addr: str | None = None,
        tags: Sequence[str] = (),
    ) -> DeviceRecord:
        now = self._clock.now()
        async with self._unit() as session:
            await devices_repo.create_device(
                session,
                uid=uid,
                tenant_id=tenant_id,
                name=name,
                now=now,
                mac=mac,
                info=info,
                remote_addr=remote_addr,
                tags=tags,
            )
            # New devices always start pending.
            await presence.increment_device_count(session, tenant_id, "pending", 1)
            device = await devices_repo.get_device(session, uid)
            record = DeviceRecord.from_row(device)
        await self._invalidate(_namespace_key(tenant_id), _device_key(uid))
        return record

    async def device_update(self, uid: str, tenant_id: str, changes: DeviceChanges) -> None:
        async with self._unit() as session:
            await devices_repo.update_device(session, uid, tenant_id, changes.as_values())
        await self._invalidate(_device_key(uid))

    async def device_update_status(self, uid: str, tenant_id: str, status: str) -> str:
        async with self._unit() as session:
            previous = await devices_repo.update_status(session, uid, tenant_id, status, self._clock.now())
        await self._invalidate(_device_key(uid), _namespace_key(tenant_id))
        return previous

    async def device_delete(self, uid: str, tenant_id: str) -> None:
        async with self._unit() as session:
            await cascades.delete_device(session, uid, tenant_id)
        await self._invalidate(_device_key(uid), _namespace_key(tenant_id))

    async def device_heartbeat(self, uids: Sequence[str]) -> int:
        async with self._unit() as session:
            updated = await devices_repo.heartbeat(session, uids, self._clock.now())
        await self._invalidate(*(_device_key(uid) for uid in uids))
        return updated

    async def device_set_offline(self, uid: str) -> None:
        async with self._unit() as session:
            await devices_repo.set_offline(session, uid, self._clock.now())
        await self._invalidate(_device_key(uid))

    async def device_push_tag(self, tenant_id: str, uid: str, tag: str) -> bool:
        async with self._unit() as session:
            await self._require_device(session, uid, tenant_id)
            added = await tags_repo.push(session, tags_repo.DEVICE_TAGS, tenant_id, uid, tag, self._clock.now())
        await self._invalidate(_device_key(uid))
        return added

    async def device_pull_tag(self, tenant_id: str, uid: str, tag: str) -> None:
        async with self._unit() as session:
            await tags_repo.pull(session, tags_repo.DEVICE_TAGS, tenant_id, uid, tag)
        await self._invalidate(_device_key(uid))

    async def device_set_tags(self, tenant_id: str, uid: str, tags: Sequence[str]) -> list[str]:
        async with self._unit() as session:
            await self._require_device(session, uid, tenant_id)
            applied = await tags_repo.replace_owner_tags(
                session, tags_repo.DEVICE_TAGS, tenant_id, uid, tags, self._clock.now()
            )
        await self._invalidate(_device_key(uid))
        return applied

    async def device_conflicts(self, tenant_id: str, name: str | None) -> tuple[list[str], bool]:
        async with self._unit() as session:
            return await devices_repo.device_conflicts(session, tenant_id, name)

    async def _require_device(self, session: AsyncSession, uid: str, tenant_id: str) -> None:
        device = await devices_repo.get_device(session, uid)
        if device is None or device.tenant_id != tenant_id:
            raise NotFoundError("device", uid)

    # -- sessions -----------------------------------------------------------

    async def session_list(self, *options: QueryOption) -> tuple[list[SessionRecord], int]:
        builder = self._builder(sessions_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await sessions_repo.list_sessions(session, builder)
            return [_session_record(row) for row in rows], total

    async def session_resolve(self, kind: SessionResolver, value: str, *options: QueryOption) -> SessionRecord:
        predicate = resolver_predicate(SessionResolver, kind, value)
        builder = self._builder(sessions_repo.SOURCE, options)
        async with self._unit() as session:
            row = await sessions_repo.resolve_session(session, builder, predicate)
            return _session_record(row)

    async def session_create(
        self,
        *,
        uid: str,
        device_uid: str,
        username: str = "",
        ip_address: str = "",
        type: str = "shell",
        term: str | None = None,
    ) -> SessionRecord:
        now = self._clock.now()
        async with self._unit() as session:
            device = await devices_repo.get_device(session, device_uid)
            if device is None:
                raise NotFoundError("device", device_uid)
            # Sessions inherit the tenant of the device they were opened on.
            row = await sessions_repo.create_session(
                session,
                uid=uid,
                device_uid=device_uid,
                tenant_id=device.tenant_id,
                now=now,
                username=username,
                ip_address=ip_address,
                type=type,
                term=term,
            )
            return SessionRecord.model_validate(row).model_copy(update={"active": True, "device_name": device.name})

    async def session_keepalive(self, uid: str) -> bool:
        now = self._clock.now()
        async with self._unit() as session:
            row = await sessions_repo.get_session_row(session, uid)
            if row is None:
                raise NotFoundError("session", uid)
            if row.closed:
                return False
            await sessions_repo.update_session(session, uid, {"last_seen": now})
            await sessions_repo.touch_active(session, uid, row.tenant_id, now)
            return True

    async def session_close(self, uid: str) -> None:
        async with self._unit() as session:
            await cascades.close_session(session, uid, self._clock.now())

    async def session_update(self, uid: str, changes: SessionChanges) -> None:
        async with self._unit() as session:
            await sessions_repo.update_session(session, uid, changes.as_values())

    async def session_event_create(
        self,
        uid: str,
        type: str,
        *,
        seat: int = 0,
        data: dict[str, Any] | None = None,
    ) -> SessionEventRecord:
        async with self._unit() as session:
            event = await sessions_repo.add_event(
                session, uid=uid, type=type, seat=seat, now=self._clock.now(), data=data
            )
            return SessionEventRecord.model_validate(event)

    async def session_event_list(
        self,
        uid: str,
        *,
        event_type: str | None = None,
        seat: int | None = None,
        page: int | None = None,
        per_page: int | None = None,
    ) -> tuple[list[SessionEventRecord], int]:
        offset, limit = 0, None
        if page is not None or per_page is not None:
            window = paginate(page, per_page)(self._builder(sessions_repo.SOURCE, ())).page
            offset, limit = window.offset, window.per_page
        async with self._unit() as session:
            events, total = await sessions_repo.list_events(
                session, uid, event_type=event_type, seat=seat, offset=offset, limit=limit
            )
            return [SessionEventRecord.model_validate(event) for event in events], total

    async def record_frame_create(self, uid: str, message: str, *, width: int = 0, height: int = 0) -> None:
        async with self._unit() as session:
            row = await sessions_repo.get_session_row(session, uid)
            if row is None:
                raise NotFoundError("session", uid)
            await sessions_repo.add_frame(
                session,
                uid=uid,
                tenant_id=row.tenant_id,
                message=message,
                width=width,
                height=height,
                now=self._clock.now(),
            )
            if not row.recorded:
                await sessions_repo.update_session(session, uid, {"recorded": True})

    async def record_frame_list(self, uid: str) -> list[RecordedFrameRecord]:
        async with self._unit() as session:
            frames = await sessions_repo.list_frames(session, uid)
            return [RecordedFrameRecord.model_validate(frame) for frame in frames]

    async def record_frame_delete(self, uid: str) -> int:
        async with self._unit() as session:
            deleted = await sessions_repo.delete_frames(session, uid)
            await sessions_repo.update_session(session, uid, {"recorded": False})
            return deleted

    # -- tags ---------------------------------------------------------------

    async def tag_create(self, tenant_id: str, name: str) -> TagRecord:
        async with self._unit() as session:
            tag = await tags_repo.ensure(session, tenant_id, name, self._clock.now())
            return TagRecord.model_validate(tag)

    async def tag_list(self, *options: QueryOption) -> tuple[list[TagRecord], int]:
        builder = self._builder(tags_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await tags_repo.list_tags(session, builder)
            return [TagRecord.model_validate(row[0]) for row in rows], total

    async def tag_resolve(self, kind: TagResolver, value: str, *options: QueryOption) -> TagRecord:
        predicate = resolver_predicate(TagResolver, kind, value)
        builder = self._builder(tags_repo.SOURCE, options)
        async with self._unit() as session:
            row = await tags_repo.resolve_tag(session, builder, predicate)
            return TagRecord.model_validate(row[0])

    async def tag_conflicts(self, tenant_id: str, name: str | None) -> tuple[list[str], bool]:
        async with self._unit() as session:
            return await tags_repo.tag_conflicts(session, tenant_id, name)

    async def tag_rename(self, tenant_id: str, old: str, new: str) -> int:
        async with self._unit() as session:
            uids = await tags_repo.tagged_owners(session, tags_repo.DEVICE_TAGS, tenant_id, old)
            modified = await cascades.rename_tag(session, tenant_id, old, new)
        await self._invalidate(*(_device_key(uid) for uid in uids))
        return modified

    async def tag_delete(self, tenant_id: str, name: str) -> int:
        async with self._unit() as session:
            uids = await tags_repo.tagged_owners(session, tags_repo.DEVICE_TAGS, tenant_id, name)
            modified = await cascades.delete_tag(session, tenant_id, name)
        await self._invalidate(*(_device_key(uid) for uid in uids))
        return modified

    # -- firewall rules -----------------------------------------------------

    async def firewall_rule_list(self, *options: QueryOption) -> tuple[list[FirewallRuleRecord], int]:
        builder = self._builder(firewall_rules_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await firewall_rules_repo.list_rules(session, builder)
            return [FirewallRuleRecord.from_row(row[0]) for row in rows], total

    async def firewall_rule_resolve(
        self, kind: FirewallRuleResolver, value: str, *options: QueryOption
    ) -> FirewallRuleRecord:
        predicate = resolver_predicate(FirewallRuleResolver, kind, value)
        builder = self._builder(firewall_rules_repo.SOURCE, options)
        async with self._unit() as session:
            row = await firewall_rules_repo.resolve_rule(session, builder, predicate)
            return FirewallRuleRecord.from_row(row[0])

    async def firewall_rule_create(
        self,
        *,
        tenant_id: str,
        priority: int,
        action: str = "allow",
        active: bool = True,
        source_ip: str = ".*",
        username: str = ".*",
        filter_hostname: str | None = None,
        filter_tags: Sequence[str] = (),
    ) -> FirewallRuleRecord:
        async with self._unit() as session:
            rule = await firewall_rules_repo.create_rule(
                session,
                tenant_id=tenant_id,
                priority=priority,
                now=self._clock.now(),
                action=action,
                active=active,
                source_ip=source_ip,
                username=username,
                filter_hostname=filter_hostname,
                filter_tags=filter_tags,
            )
            rule = await firewall_rules_repo.get_rule(session, tenant_id, rule.id)
            return FirewallRuleRecord.from_row(rule)

    async def firewall_rule_update(self, tenant_id: str, rule_id: str, changes: FirewallRuleChanges) -> None:
        rule_id = parse_uuid(rule_id)
        async with self._unit() as session:
            await firewall_rules_repo.update_rule(session, tenant_id, rule_id, changes.as_values())

    async def firewall_rule_delete(self, tenant_id: str, rule_id: str) -> None:
        rule_id = parse_uuid(rule_id)
        async with self._unit() as session:
            await firewall_rules_repo.delete_rule(session, tenant_id, rule_id)

    async def firewall_rule_push_tag(self, tenant_id: str, rule_id: str, tag: str) -> bool:
        rule_id = parse_uuid(rule_id)
        async with self._unit() as session:
            if await firewall_rules_repo.get_rule(session, tenant_id, rule_id) is None:
                raise NotFoundError("firewall_rule", rule_id)
            return await tags_repo.push(
                session, tags_repo.FIREWALL_RULE_TAGS, tenant_id, rule_id, tag, self._clock.now()
            )

    async def firewall_rule_pull_tag(self, tenant_id: str, rule_id: str, tag: str) -> None:
        rule_id = parse_uuid(rule_id)
        async with self._unit() as session:
            await tags_repo.pull(session, tags_repo.FIREWALL_RULE_TAGS, tenant_id, rule_id, tag)

    # -- public keys --------------------------------------------------------

    async def public_key_list(self, *options: QueryOption) -> tuple[list[PublicKeyRecord], int]:
        builder = self._builder(public_keys_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await public_keys_repo.list_keys(session, builder)
            return [PublicKeyRecord.from_row(row[0]) for row in rows], total

    async def public_key_resolve(
        self, kind: PublicKeyResolver, value: str, *options: QueryOption
    ) -> PublicKeyRecord:
        predicate = resolver_predicate(PublicKeyResolver, kind, value)
        builder = self._builder(public_keys_repo.SOURCE, options)
        async with self._unit() as session:
            row = await public_keys_repo.resolve_key(session, builder, predicate)
            return PublicKeyRecord.from_row(row[0])

    async def public_key_create(
        self,
        *,
        tenant_id: str,
        fingerprint: str,
        data: str,
        name: str = "",
        username: str = ".*",
        filter_hostname: str | None = None,
        filter_tags: Sequence[str] = (),
    ) -> PublicKeyRecord:
        async with self._unit() as session:
            await public_keys_repo.create_key(
                session,
                tenant_id=tenant_id,
                fingerprint=fingerprint,
                data=data,
                now=self._clock.now(),
                name=name,
                username=username,
                filter_hostname=filter_hostname,
                filter_tags=filter_tags,
            )
            key = await public_keys_repo.get_key(session, tenant_id, fingerprint)
            return PublicKeyRecord.from_row(key)

    async def public_key_update(self, tenant_id: str, fingerprint: str, changes: PublicKeyChanges) -> None:
        async with self._unit() as session:
            await public_keys_repo.update_key(session, tenant_id, fingerprint, changes.as_values())

    async def public_key_delete(self, tenant_id: str, fingerprint: str) -> None:
        async with self._unit() as session:
            await public_keys_repo.delete_key(session, tenant_id, fingerprint)

    async def public_key_push_tag(self, tenant_id: str, fingerprint: str, tag: str) -> bool:
        async with self._unit() as session:
            if await public_keys_repo.get_key(session, tenant_id, fingerprint) is None:
                raise NotFoundError("public_key", fingerprint)
            return await tags_repo.push(
                session, tags_repo.PUBLIC_KEY_TAGS, tenant_id, fingerprint, tag, self._clock.now()
            )

    async def public_key_pull_tag(self, tenant_id: str, fingerprint: str, tag: str) -> None:
        async with self._unit() as session:
            await tags_repo.pull(session, tags_repo.PUBLIC_KEY_TAGS, tenant_id, fingerprint, tag)

    # -- users --------------------------------------------------------------

    async def user_list(self, *options: QueryOption) -> tuple[list[UserRecord], int]:
        builder = self._builder(users_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await users_repo.list_users(session, builder)
            return [_user_record(row) for row in rows], total

    async def user_resolve(self, kind: UserResolver, value: str, *options: QueryOption) -> UserRecord:
        predicate = resolver_predicate(UserResolver, kind, value)
        builder = self._builder(users_repo.SOURCE, options)
        async with self._unit() as session:
            row = await users_repo.resolve_user(session, builder, predicate)
            return _user_record(row)

    async def user_create(
        self,
        *,
        username: str,
        email: str,
        name: str = "",
        password_digest: str | None = None,
        status: str = "confirmed",
        max_namespaces: int = -1,
    ) -> UserRecord:
        async with self._unit() as session:
            user = await users_repo.create_user(
                session,
                username=username,
                email=email,
                now=self._clock.now(),
                name=name,
                password_digest=password_digest,
                status=status,
                max_namespaces=max_namespaces,
            )
            return UserRecord.model_validate(user)

    async def user_update(self, user_id: str, changes: UserChanges) -> None:
        user_id = parse_uuid(user_id)
        async with self._unit() as session:
            await users_repo.update_user(session, user_id, changes.as_values())

    async def user_delete(self, user_id: str) -> None:
        user_id = parse_uuid(user_id)
        keys: list[str] = []
        async with self._unit() as session:
            for tenant_id in await namespaces_repo.owned_tenants(session, user_id):
                keys.append(_namespace_key(tenant_id))
                keys.extend(_device_key(uid) for uid in await devices_repo.tenant_device_uids(session, tenant_id))
            # Namespaces the user only belongs to lose a member entry.
            for tenant_id in await namespaces_repo.member_tenants(session, user_id):
                if _namespace_key(tenant_id) not in keys:
                    keys.append(_namespace_key(tenant_id))
            await cascades.delete_user(session, user_id)
        await self._invalidate(*keys)

    async def user_conflicts(self, candidate: UserConflicts) -> tuple[list[str], bool]:
        async with self._unit() as session:
            return await users_repo.user_conflicts(session, candidate)

    # -- api keys -----------------------------------------------------------

    async def api_key_list(self, *options: QueryOption) -> tuple[list[APIKeyRecord], int]:
        builder = self._builder(api_keys_repo.SOURCE, options)
        async with self._unit() as session:
            rows, total = await api_keys_repo.list_api_keys(session, builder)
            return [APIKeyRecord.model_validate(row[0]) for row in rows], total

    async def api_key_resolve(self, kind: APIKeyResolver, value: str, *options: QueryOption) -> APIKeyRecord:
        predicate = resolver_predicate(APIKeyResolver, kind, value)
        builder = self._builder(api_keys_repo.SOURCE, options)
        async with self._unit() as session:
            row = await api_keys_repo.resolve_api_key(session, builder, predicate)
            return APIKeyRecord.model_validate(row[0])

    async def api_key_create(
        self,
        *,
        key_id: str,
        tenant_id: str,
        name: str,
        created_by: str,
        role: str = "observer",
        expires_at=None,  # noqa: ANN001
    ) -> APIKeyRecord:
        async with self._unit() as session:
            key = await api_keys_repo.create_api_key(
                session,
                key_id=key_id,
                tenant_id=tenant_id,
                name=name,
                created_by=created_by,
                now=self._clock.now(),
                role=role,
                expires_at=expires_at,
            )
            return APIKeyRecord.model_validate(key)

    async def api_key_update(self, tenant_id: str, key_id: str, changes: APIKeyChanges) -> None:
        values = stamp(changes.as_values(), "updated_at", self._clock.now())
        async with self._unit() as session:
            await api_keys_repo.update_api_key(session, tenant_id, key_id, values)

    async def api_key_delete(self, tenant_id: str, key_id: str) -> None:
        async with self._unit() as session:
            await api_keys_repo.delete_api_key(session, tenant_id, key_id)

    async def api_key_conflicts(self, tenant_id: str, candidate: APIKeyConflicts) -> tuple[list[str], bool]:
        async with self._unit() as session:
            return await api_keys_repo.api_key_conflicts(session, tenant_id, candidate)

    # -- system -------------------------------------------------------------

    async def system_get(self) -> SystemRecord:
        async def _load() -> SystemRecord:
            async with self._unit() as session:
                current = await system_repo.get_system(session)
                if current is None:
                    return SystemRecord()
                return SystemRecord.model_validate(current)

        return await self._cached(SYSTEM_KEY, _load, SystemRecord)

    async def system_set(self, changes: SystemChanges) -> SystemRecord:
        async with self._unit() as session:
            current = await system_repo.upsert_system(session, changes.as_values(), self._clock.now())
            record = SystemRecord.model_validate(current)
        await self._invalidate(SYSTEM_KEY)
        return record


def _session_record(row) -> SessionRecord:  # noqa: ANN001
    return SessionRecord.model_validate(row[0]).model_copy(
        update={"active": bool(row.active), "device_name": row.device_name}
    )


def _user_record(row) -> UserRecord:  # noqa: ANN001
    return UserRecord.model_validate(row[0]).model_copy(update={"namespaces_owned": int(row.namespaces_owned or 0)})
