"""
Атомарное применение команд к лоту.

Каждая команда выполняется как одна транзакция над записью лота:
- внутри процесса — взаимное исключение по unit_id (asyncio.Lock на лот, не глобальный);
- между процессами — оптимистическая блокировка по TradableUnit.version.
При конфликте транзакция целиком выполняется заново на свежем состоянии
(валидность ставки зависит от актуального минимума), после TX_RETRY_ATTEMPTS
попыток — TransientConflict.
"""
import asyncio
import logging
import weakref
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from config import config
from database.models import TradableUnit, utcnow
from services.errors import DomainError, TransientConflict, UnitNotFound
from services.events import DomainEvent
from services.notifications import dispatch_events

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Ошибки, при которых имеет смысл повторить транзакцию целиком
RETRYABLE_EXC = (StaleDataError, IntegrityError, OperationalError)

# SQLSTATE unique_violation (PostgreSQL)
UNIQUE_VIOLATION = "23505"


def is_conflict(error: BaseException) -> bool:
    """
    Конфликт с параллельной транзакцией, а не ошибка данных.
    Из IntegrityError повторяется только нарушение уникальности.
    """
    if not isinstance(error, IntegrityError):
        return True
    orig = error.orig
    if getattr(orig, "sqlstate", None) == UNIQUE_VIOLATION or getattr(orig, "pgcode", None) == UNIQUE_VIOLATION:
        return True
    return "UNIQUE constraint failed" in str(orig)


async def load_unit(session: AsyncSession, unit_id: int) -> TradableUnit:
    """Загрузить лот со ставками, предложениями и назначением."""
    result = await session.execute(select(TradableUnit).where(TradableUnit.id == unit_id))
    unit = result.scalar_one_or_none()
    if unit is None:
        raise UnitNotFound(f"Лот {unit_id} не найден", unit_id=unit_id)
    return unit


class UnitContext:
    """Состояние одной попытки транзакции: сессия, лот, время, накопленные события."""

    def __init__(self, session: AsyncSession, unit: TradableUnit, now: datetime):
        self.session = session
        self.unit = unit
        self.now = now
        self.events: List[DomainEvent] = []
        self.unchanged = False

    def mark_unchanged(self) -> None:
        """Команда оказалась no-op: версию лота не трогаем."""
        self.unchanged = True

    def emit(self, event: DomainEvent) -> None:
        self.events.append(event)


class UnitTransactions:
    """Выполнение команд над лотами с блокировкой по лоту и повторами."""

    def __init__(
        self,
        session_factory,
        notifier=None,
        clock: Callable[[], datetime] = utcnow,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.attempts = attempts or config.TX_RETRY_ATTEMPTS
        self.base_delay = config.TX_RETRY_BASE_DELAY if base_delay is None else base_delay
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, unit_id: int) -> asyncio.Lock:
        lock = self._locks.get(unit_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[unit_id] = lock
        return lock

    async def run(
        self,
        unit_id: int,
        operation: Callable[[UnitContext], Awaitable[T]],
        now: Optional[datetime] = None,
    ) -> T:
        """Выполнить операцию над лотом и после commit разослать события."""
        lock = self._lock_for(unit_id)
        async with lock:
            result, events = await self._run_with_retries(unit_id, operation, now)
        await dispatch_events(self.notifier, events)
        return result

    async def create(
        self,
        operation: Callable[[AsyncSession, datetime], Awaitable[Tuple[TradableUnit, List[DomainEvent]]]],
        now: Optional[datetime] = None,
    ) -> TradableUnit:
        """Создать новый лот: конкурентов за ещё не существующую запись нет, повторы не нужны."""
        async with self.session_factory() as session:
            try:
                unit, events = await operation(session, now or self.clock())
                await session.commit()
            except DomainError:
                await session.rollback()
                raise
        await dispatch_events(self.notifier, events)
        return unit

    async def _run_with_retries(
        self,
        unit_id: int,
        operation: Callable[[UnitContext], Awaitable[T]],
        now: Optional[datetime],
    ) -> Tuple[T, List[DomainEvent]]:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            async with self.session_factory() as session:
                try:
                    unit = await load_unit(session, unit_id)
                    ctx = UnitContext(session, unit, now or self.clock())
                    result = await operation(ctx)
                    if not ctx.unchanged:
                        # Любое изменение поднимает версию лота
                        unit.updated_at = ctx.now
                        flag_modified(unit, "updated_at")
                    await session.commit()
                    return result, ctx.events
                except DomainError:
                    await session.rollback()
                    raise
                except RETRYABLE_EXC as e:
                    await session.rollback()
                    if not is_conflict(e):
                        logger.error("Unit %s transaction rejected by database: %r", unit_id, e)
                        raise
                    last_error = e
                    logger.warning(
                        "Unit %s transaction conflict (attempt=%s/%s): %r",
                        unit_id, attempt, self.attempts, e,
                    )
            if attempt < self.attempts:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
        logger.error("Unit %s transaction failed after %s attempts", unit_id, self.attempts)
        raise TransientConflict(unit_id, self.attempts, last_error)
