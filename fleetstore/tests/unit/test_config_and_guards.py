from __future__ import annotations

import pytest

from fleetstore.core.config import Settings, get_settings
from fleetstore.domain.models import Device
from fleetstore.persistence.db import engine_kwargs
from fleetstore.persistence.guards import TenantPredicateError, tenant_predicate
from fleetstore.store import Store
from fleetstore.tests.utils.factories import create_device, create_namespace


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRESENCE_WINDOW_S", "30")
    monkeypatch.setenv("CACHE_ENABLED", "false")
    monkeypatch.setenv("PAGE_MAX_PER_PAGE", "50")
    get_settings.cache_clear()
    settings = get_settings()
    assert settings.presence_window_s == 30
    assert settings.cache_enabled is False
    assert settings.page_max_per_page == 50


def test_tenant_predicate_requires_a_tenant(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(TenantPredicateError):
        tenant_predicate(Device, "")

    monkeypatch.setenv("REQUIRE_TENANT_PREDICATE", "false")
    get_settings.cache_clear()
    assert tenant_predicate(Device, "") is not None


def test_engine_kwargs_per_backend() -> None:
    settings = Settings(db_pool_size=4, db_max_overflow=2, db_statement_timeout_ms=1500)
    pg = engine_kwargs(settings, "postgresql+asyncpg://u:p@db/fleet")
    assert pg["pool_size"] == 4
    assert pg["max_overflow"] == 2
    assert pg["connect_args"]["server_settings"]["statement_timeout"] == "1500"

    lite = engine_kwargs(settings, TEST_DATABASE_URL)
    assert "pool_size" not in lite
    assert lite["connect_args"] == {"check_same_thread": False}


@pytest.mark.asyncio
async def test_presence_window_follows_settings(session_factory, clock) -> None:
    settings = Settings(database_url=TEST_DATABASE_URL, presence_window_s=30)
    store = Store(session_factory, clock=clock, settings=settings)
    _owner, namespace = await create_namespace(store)
    device = await create_device(store, namespace.tenant_id, "edge")

    clock.advance(20)
    assert (await store.device_get(device.uid)).online is True
    clock.advance(20)
    assert (await store.device_get(device.uid)).online is False
