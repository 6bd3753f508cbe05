from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from fleetstore.core.errors import (
    DuplicateError,
    FleetStoreError,
    NotFoundError,
    StoreUnavailableError,
    TransactionAbortedError,
)
from fleetstore.domain.changes import NamespaceChanges
from fleetstore.persistence.cache import RedisCache
from fleetstore.persistence.db import build_engine, build_session_factory, create_schema
from fleetstore.persistence.query import match_tenant
from fleetstore.persistence.transactions import CascadeStep, translate_error
from fleetstore.store import Store
from fleetstore.tests.utils.factories import create_device, create_namespace, create_owner
from fleetstore.tests.utils.fake_redis import FakeRedis


def test_translate_error_maps_engine_failures() -> None:
    duplicate = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    assert isinstance(translate_error(duplicate), DuplicateError)
    assert isinstance(translate_error(OperationalError("SELECT", {}, Exception("gone"))), StoreUnavailableError)
    assert isinstance(translate_error(ConnectionRefusedError("refused")), StoreUnavailableError)
    missing = NotFoundError("device", "abc")
    assert translate_error(missing) is missing


@pytest.mark.asyncio
async def test_with_transaction_commits_every_write_together(store) -> None:
    owner = await create_owner(store)
    tenant_id = str(uuid4())

    async def _provision(tx: Store) -> str:
        await tx.namespace_create(tenant_id=tenant_id, name="provisioned", owner=owner.id)
        device = await create_device(tx, tenant_id, "first")
        return device.uid

    uid = await store.with_transaction(_provision)
    assert (await store.device_get(uid, tenant_id)).name == "first"
    assert (await store.namespace_get(tenant_id)).devices_pending_count == 1


@pytest.mark.asyncio
async def test_with_transaction_rolls_back_on_error(store) -> None:
    owner = await create_owner(store)
    tenant_id = str(uuid4())

    async def _provision(tx: Store) -> None:
        await tx.namespace_create(tenant_id=tenant_id, name="doomed", owner=owner.id)
        await create_device(tx, tenant_id, "first")
        raise RuntimeError("abort provisioning")

    with pytest.raises(RuntimeError):
        await store.with_transaction(_provision)
    with pytest.raises(NotFoundError):
        await store.namespace_get(tenant_id)
    assert (await store.device_list(match_tenant(tenant_id)))[1] == 0


@pytest.mark.asyncio
async def test_invalidation_is_deferred_until_commit(store, fake_redis) -> None:
    _owner, namespace = await create_namespace(store)
    tenant_id = namespace.tenant_id
    await store.namespace_get(tenant_id)
    key = f"test:namespace/{tenant_id}"

    async def _rename(tx: Store) -> None:
        await tx.namespace_update(tenant_id, NamespaceChanges(name="renamed"))
        assert key in fake_redis.keys()
        # Reads inside the transaction see its own writes, never the cache.
        assert (await tx.namespace_get(tenant_id)).name == "renamed"

    await store.with_transaction(_rename)
    assert key not in fake_redis.keys()
    assert (await store.namespace_get(tenant_id)).name == "renamed"


@pytest.mark.asyncio
async def test_run_cascade_returns_step_results_and_wraps_failures(store) -> None:
    async def _one(session):  # noqa: ANN001, ANN202
        return 1

    async def _two(session):  # noqa: ANN001, ANN202
        return 2

    assert await store.run_cascade("custom", CascadeStep("one", _one), CascadeStep("two", _two)) == [1, 2]

    async def _duplicate(session):  # noqa: ANN001, ANN202
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(TransactionAbortedError) as excinfo:
        await store.run_cascade("custom", CascadeStep("one", _one), CascadeStep("dup", _duplicate))
    assert excinfo.value.step == "dup"
    assert isinstance(excinfo.value.cause, DuplicateError)

    async def _missing(session):  # noqa: ANN001, ANN202
        raise NotFoundError("device", "abc")

    # Store errors surface verbatim so callers can still tell NotFound apart.
    with pytest.raises(NotFoundError):
        await store.run_cascade("custom", CascadeStep("missing", _missing))


@pytest.mark.asyncio
async def test_unreachable_database_is_store_unavailable(settings, clock) -> None:
    url = "sqlite+aiosqlite:////nonexistent-dir/fleet.db"
    engine = build_engine(url, settings)
    store = Store(build_session_factory(engine), clock=clock, settings=settings)
    try:
        with pytest.raises(StoreUnavailableError):
            await store.system_get()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_aclose_releases_cache_client_and_engine(settings, clock) -> None:
    engine = build_engine(settings.database_url, settings)
    await create_schema(engine)
    redis = FakeRedis()
    store = Store(
        build_session_factory(engine),
        cache=RedisCache(redis, prefix="test"),
        clock=clock,
        settings=settings,
        engine=engine,
    )
    assert (await store.system_get()).setup is False
    assert redis.keys() == ["test:system/settings"]
    pool = engine.sync_engine.pool

    await store.aclose()

    assert redis.closed is True
    assert engine.sync_engine.pool is not pool


def test_every_store_error_shares_a_base() -> None:
    for error in (
        NotFoundError("device"),
        DuplicateError("dup"),
        StoreUnavailableError("down"),
        TransactionAbortedError("c", "s", RuntimeError("x")),
    ):
        assert isinstance(error, FleetStoreError)
