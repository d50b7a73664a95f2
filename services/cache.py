"""
Кеширование участников с использованием Redis для поддержки нескольких инстансов.

Кешируется CachedActor (dataclass), а НЕ ORM-объект Actor, чтобы избежать
DetachedInstanceError при обращении к объекту вне сессии.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import asyncio
import json
import logging
from datetime import datetime, timedelta

from database.models import ActorRole
from services.geo import Coordinate
from config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CachedActor:
    """Легковесный снимок участника для кеша (не ORM-объект)."""
    id: str
    role: ActorRole
    full_name: str
    latitude: Optional[float]
    longitude: Optional[float]
    telegram_chat_id: Optional[int]
    is_active: bool

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinate(self.latitude, self.longitude)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "full_name": self.full_name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "telegram_chat_id": self.telegram_chat_id,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CachedActor:
        return cls(
            id=d["id"],
            role=ActorRole(d["role"]),
            full_name=d["full_name"],
            latitude=d.get("latitude"),
            longitude=d.get("longitude"),
            telegram_chat_id=d.get("telegram_chat_id"),
            is_active=d["is_active"],
        )

    @classmethod
    def from_orm(cls, actor) -> CachedActor:
        """Создать из SQLAlchemy Actor."""
        return cls(
            id=actor.id,
            role=actor.role if isinstance(actor.role, ActorRole) else ActorRole(actor.role),
            full_name=actor.full_name,
            latitude=actor.latitude,
            longitude=actor.longitude,
            telegram_chat_id=actor.telegram_chat_id,
            is_active=actor.is_active,
        )


class RedisActorCache:
    """Кеш участников на Redis с TTL."""

    def __init__(self, redis_client, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl = ttl_seconds
        self._prefix = "actor_cache:"

    def _key(self, actor_id: str) -> str:
        return f"{self._prefix}{actor_id}"

    async def get(self, actor_id: str) -> Optional[CachedActor]:
        """Получить кешированного участника."""
        try:
            data = await self.redis.get(self._key(actor_id))
            if data:
                return CachedActor.from_dict(json.loads(data))
        except Exception as e:
            logger.debug("Cache get error for actor %s: %s", actor_id, e)
        return None

    async def set(self, actor_id: str, actor) -> None:
        """Сохранить участника в кеш (принимает ORM Actor или CachedActor)."""
        try:
            cached = actor if isinstance(actor, CachedActor) else CachedActor.from_orm(actor)
            await self.redis.setex(self._key(actor_id), self.ttl, json.dumps(cached.to_dict()))
        except Exception as e:
            logger.debug("Cache set error for actor %s: %s", actor_id, e)

    async def invalidate(self, actor_id: str) -> None:
        try:
            await self.redis.delete(self._key(actor_id))
        except Exception as e:
            logger.debug("Cache invalidate error for actor %s: %s", actor_id, e)


class MemoryActorCache:
    """In-memory кеш участников (fallback если Redis недоступен)."""

    def __init__(self, ttl_seconds: int = 300):
        self._cache: dict[str, tuple[CachedActor, datetime]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._lock = asyncio.Lock()

    async def get(self, actor_id: str) -> Optional[CachedActor]:
        async with self._lock:
            if actor_id in self._cache:
                cached, expiry = self._cache[actor_id]
                if datetime.now() < expiry:
                    return cached
                del self._cache[actor_id]
        return None

    async def set(self, actor_id: str, actor) -> None:
        async with self._lock:
            cached = actor if isinstance(actor, CachedActor) else CachedActor.from_orm(actor)
            self._cache[actor_id] = (cached, datetime.now() + self._ttl)

    async def invalidate(self, actor_id: str) -> None:
        async with self._lock:
            self._cache.pop(actor_id, None)


async def init_cache(redis_client=None) -> RedisActorCache | MemoryActorCache:
    """Создать кеш участников: Redis если доступен, иначе память."""
    if redis_client:
        try:
            await redis_client.ping()
            logger.info("Using Redis cache for actors")
            return RedisActorCache(redis_client, ttl_seconds=config.REDIS_CACHE_TTL)
        except Exception as e:
            logger.warning("Redis not available for cache, using memory: %s", e)

    logger.info("Using memory cache for actors")
    return MemoryActorCache(ttl_seconds=config.REDIS_CACHE_TTL)
