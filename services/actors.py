from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Actor, ActorRole
from services.cache import CachedActor
from services.errors import ActorUnauthorized

# --- Actor Services ---


async def get_actor(session: AsyncSession, actor_id: str) -> Actor | None:
    stmt = select(Actor).where(Actor.id == actor_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def upsert_actor(
    session: AsyncSession,
    actor_id: str,
    role: ActorRole,
    full_name: str = "",
    latitude: float | None = None,
    longitude: float | None = None,
    telegram_chat_id: int | None = None,
    is_active: bool = True,
) -> Actor:
    """
    Записать проекцию участника из сервиса профилей.
    Ядро само участников не создаёт — только синхронизирует id, роль и координаты.
    """
    actor = await get_actor(session, actor_id)
    if actor is None:
        actor = Actor(id=actor_id, role=role)
        session.add(actor)
    actor.role = role
    actor.full_name = full_name
    actor.latitude = latitude
    actor.longitude = longitude
    actor.telegram_chat_id = telegram_chat_id
    actor.is_active = is_active
    await session.commit()
    await session.refresh(actor)
    return actor


class ActorDirectory:
    """Чтение участников: сначала кеш, затем БД."""

    def __init__(self, cache=None):
        self.cache = cache

    async def get(self, session: AsyncSession, actor_id: str) -> Optional[CachedActor]:
        if self.cache is not None:
            cached = await self.cache.get(actor_id)
            if cached is not None:
                return cached
        actor = await get_actor(session, actor_id)
        if actor is None:
            return None
        cached = CachedActor.from_orm(actor)
        if self.cache is not None:
            await self.cache.set(actor_id, cached)
        return cached

    async def require(
        self,
        session: AsyncSession,
        actor_id: str,
        roles: Iterable[ActorRole] | None = None,
    ) -> CachedActor:
        """Участник должен существовать, быть активным и иметь одну из ролей."""
        actor = await self.get(session, actor_id)
        if actor is None or not actor.is_active:
            raise ActorUnauthorized(f"Участник {actor_id} не найден или не активирован", actor_id=actor_id)
        allowed = tuple(roles or ())
        if allowed and actor.role not in allowed:
            raise ActorUnauthorized(
                f"Действие недоступно для роли {actor.role.value}",
                actor_id=actor_id,
                role=actor.role.value,
                required=[r.value for r in allowed],
            )
        return actor

    async def invalidate(self, actor_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate(actor_id)
