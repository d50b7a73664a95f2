"""
Фоновая проверка лотов: истёкшие таймеры подготовки и закрытые торги.

Срок всегда вычисляется из сохранённых меток времени, поэтому после
перезапуска процесса проверка просто досчитывает пропущенное.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from config import config
from database.models import TradableUnit, UnitKind, UnitStatus, utcnow
from services.bid_ledger import BidLedger
from services.errors import DomainError, TransientConflict
from services.fulfillment import FulfillmentStateMachine
from services.lifecycle import prep_due_at

logger = logging.getLogger(__name__)

_sweep_task: Optional[asyncio.Task] = None


@dataclass
class SweepResult:
    settled: int = 0
    auto_accepted: int = 0
    failed: int = 0


async def due_preparations(session, now: datetime) -> List[int]:
    result = await session.execute(
        select(TradableUnit).where(TradableUnit.status == UnitStatus.PREPARING)
    )
    units = result.scalars().all()
    return [u.id for u in units if prep_due_at(u) is not None and prep_due_at(u) <= now]


async def closed_biddings(session, now: datetime) -> List[int]:
    result = await session.execute(
        select(TradableUnit.id).where(
            TradableUnit.kind == UnitKind.LISTING,
            TradableUnit.status == UnitStatus.ACTIVE,
            TradableUnit.bidding_end_at.is_not(None),
            TradableUnit.bidding_end_at <= now,
        )
    )
    return list(result.scalars().all())


async def sweep_once(
    session_maker,
    fulfillment: FulfillmentStateMachine,
    ledger: BidLedger,
    now: Optional[datetime] = None,
    auto_accept: Optional[bool] = None,
) -> SweepResult:
    """Один проход. Ошибка по одному лоту не останавливает остальные."""
    now = now or utcnow()
    auto_accept = config.AUTO_ACCEPT_HIGHEST_ON_CLOSE if auto_accept is None else auto_accept
    outcome = SweepResult()

    async with session_maker() as session:
        due_ids = await due_preparations(session, now)
        closed_ids = await closed_biddings(session, now) if auto_accept else []

    for unit_id in due_ids:
        try:
            if await fulfillment.settle(unit_id, now):
                outcome.settled += 1
        except (DomainError, TransientConflict) as e:
            outcome.failed += 1
            logger.warning("Sweep: unit %s preparation not settled: %s", unit_id, e)

    for unit_id in closed_ids:
        try:
            if await ledger.accept_highest(unit_id, now) is not None:
                outcome.auto_accepted += 1
        except (DomainError, TransientConflict) as e:
            outcome.failed += 1
            logger.warning("Sweep: unit %s highest bid not accepted: %s", unit_id, e)

    if outcome.settled or outcome.auto_accepted or outcome.failed:
        logger.info(
            "Sweep done: settled=%d auto_accepted=%d failed=%d",
            outcome.settled, outcome.auto_accepted, outcome.failed,
        )
    return outcome


async def _sweep_loop(session_maker, fulfillment, ledger, interval: float):
    logger.info("Sweep started (interval=%ss)", interval)
    while True:
        try:
            await sweep_once(session_maker, fulfillment, ledger)
        except asyncio.CancelledError:
            logger.info("Sweep stopped")
            return
        except Exception as e:
            logger.error("Sweep iteration error: %s", e, exc_info=True)
        await asyncio.sleep(interval)


def start_sweep(session_maker, fulfillment, ledger, interval: Optional[float] = None) -> asyncio.Task:
    """Запуск фоновой проверки (вызывать из main.py)."""
    global _sweep_task
    interval = config.SWEEP_INTERVAL_SECONDS if interval is None else interval
    _sweep_task = asyncio.create_task(_sweep_loop(session_maker, fulfillment, ledger, interval))
    return _sweep_task


def stop_sweep():
    global _sweep_task
    if _sweep_task and not _sweep_task.done():
        _sweep_task.cancel()
    _sweep_task = None
