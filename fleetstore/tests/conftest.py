from __future__ import annotations

import pytest

from fleetstore.core.clock import FrozenClock
from fleetstore.core.config import Settings, get_settings
from fleetstore.persistence.cache import RedisCache
from fleetstore.persistence.db import build_engine, build_session_factory, create_schema
from fleetstore.store import Store
from fleetstore.tests.utils.fake_redis import FakeRedis


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Env overrides in one test must not leak into the cached settings of the next.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=TEST_DATABASE_URL, cache_prefix="test")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def engine(settings: Settings):
    # Fresh in-memory schema per test keeps rows isolated without cleanup passes.
    test_engine = build_engine(TEST_DATABASE_URL, settings)
    await create_schema(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, fake_redis: FakeRedis, clock: FrozenClock, settings: Settings) -> Store:
    cache = RedisCache(fake_redis, prefix=settings.cache_prefix)
    return Store(session_factory, cache=cache, clock=clock, settings=settings)
