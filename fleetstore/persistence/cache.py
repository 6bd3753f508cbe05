from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

from fleetstore.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class Cache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


def cache_key(kind: str, identifier: str) -> str:
    # Composite keys keep entity kinds from colliding.
    return f"{kind}/{identifier}"


class RedisCache:
    def __init__(self, redis: Redis, prefix: str = "") -> None:
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RedisCache":
        settings = settings or get_settings()
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return cls(redis, prefix=settings.cache_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._redis.set(self._key(key), value, ex=max(1, int(ttl)))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def close(self) -> None:
        await self._redis.aclose()


class NullCache:
    # Caching disabled: every read goes to the database.
    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def close(self) -> None:
        return None


def build_cache(settings: Settings | None = None) -> Cache:
    settings = settings or get_settings()
    if not settings.cache_enabled:
        return NullCache()
    return RedisCache.from_settings(settings)


class CacheAside:
    def __init__(self, cache: Cache, default_ttl: int = 60) -> None:
        self._cache = cache
        self.default_ttl = default_ttl

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[RecordT]],
        model: type[RecordT],
        ttl: int | None = None,
    ) -> RecordT:
        cached = await self._read(key, model)
        if cached is not None:
            return cached
        value = await loader()
        await self._write(key, value, ttl or self.default_ttl)
        return value

    async def invalidate(self, key: str) -> None:
        try:
            await self._cache.delete(key)
        except Exception as exc:  # noqa: BLE001 - cache outages must not fail writes
            logger.warning("cache_invalidate_failed key=%s", key, exc_info=exc)

    async def close(self) -> None:
        await self._cache.close()

    async def _read(self, key: str, model: type[RecordT]) -> RecordT | None:
        try:
            raw = await self._cache.get(key)
        except Exception as exc:  # noqa: BLE001 - degrade to database reads
            logger.warning("cache_get_failed key=%s", key, exc_info=exc)
            return None
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("cache_decode_failed key=%s", key, exc_info=exc)
            return None

    async def _write(self, key: str, value: BaseModel, ttl: int) -> None:
        try:
            await self._cache.set(key, value.model_dump_json(), ttl)
        except Exception as exc:  # noqa: BLE001 - population is best effort
            logger.warning("cache_set_failed key=%s", key, exc_info=exc)
