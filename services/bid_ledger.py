"""
Книга ставок по лоту.

Ставки хранятся по (unit_id, bidder_id): у покупателя одна живая ставка,
новая ставка закрывает предыдущую в той же транзакции. После принятия
ставки книга лота только для чтения.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    AcceptedBid, ActorRole, Bid, BidStatus, TradableUnit, UnitKind, UnitStatus,
)
from services.actors import ActorDirectory
from services.errors import (
    ActorUnauthorized, AlreadyAccepted, BidNotFound, BidNotLive, BidTooLow,
    NoBidToWithdraw, UnitNotBiddable,
)
from services.events import bid_accepted
from services.lifecycle import require_producer, transition
from services.transactions import UnitContext, UnitTransactions, load_unit

logger = logging.getLogger(__name__)


def rank_bids(bids: List[Bid]) -> List[Bid]:
    """Живые ставки по убыванию суммы; при равенстве раньше поставленная выше."""
    live = [b for b in bids if b.status == BidStatus.LIVE]
    return sorted(live, key=lambda b: (-b.amount, b.placed_at, b.id))


def bid_floor(unit: TradableUnit, bidder_id: str) -> float:
    """Ставка должна быть строго больше max(базовая цена, своя живая ставка)."""
    prior = unit.live_bid_of(bidder_id)
    return max(unit.base_price, prior.amount if prior else unit.base_price)


def ensure_biddable(unit: TradableUnit, now: datetime) -> None:
    if unit.kind != UnitKind.LISTING:
        raise UnitNotBiddable("Это заказ, а не лот с торгами", unit_id=unit.id, reason="not_a_listing")
    if unit.status != UnitStatus.ACTIVE or unit.accepted_bid is not None:
        raise UnitNotBiddable(
            "Торги по лоту закрыты", unit_id=unit.id, reason="closed", status=unit.status.value
        )
    if unit.bidding_start_at is not None and now < unit.bidding_start_at:
        raise UnitNotBiddable(
            "Торги ещё не начались", unit_id=unit.id, reason="not_started",
            starts_at=unit.bidding_start_at.isoformat(),
        )
    if unit.bidding_end_at is not None and now >= unit.bidding_end_at:
        raise UnitNotBiddable(
            "Торги завершены", unit_id=unit.id, reason="ended",
            ended_at=unit.bidding_end_at.isoformat(),
        )


def ensure_ledger_open(unit: TradableUnit) -> None:
    if unit.status != UnitStatus.ACTIVE or unit.accepted_bid is not None:
        raise UnitNotBiddable(
            "Торги по лоту закрыты", unit_id=unit.id, reason="closed", status=unit.status.value
        )


def find_bid(unit: TradableUnit, bid_id: int) -> Bid:
    bid = next((b for b in unit.bids if b.id == bid_id), None)
    if bid is None:
        raise BidNotFound(f"Ставка {bid_id} не найдена", unit_id=unit.id, bid_id=bid_id)
    return bid


def apply_acceptance(ctx: UnitContext, bid: Bid, auto: bool = False) -> AcceptedBid:
    """Записать принятую ставку и перевести лот в accepted."""
    unit = ctx.unit
    if unit.accepted_bid is not None:
        raise AlreadyAccepted(
            "По лоту уже принята ставка", unit_id=unit.id, bid_id=unit.accepted_bid.bid_id
        )
    if bid.status != BidStatus.LIVE:
        raise BidNotLive(
            "Ставка больше не действует", unit_id=unit.id, bid_id=bid.id, status=bid.status.value
        )
    bid.status = BidStatus.ACCEPTED
    bid.closed_at = ctx.now
    # Остальные живые ставки закрываются вместе с торгами
    for other in rank_bids(unit.bids):
        other.status = BidStatus.DECLINED
        other.closed_at = ctx.now
    accepted = AcceptedBid(
        bid_id=bid.id,
        buyer_id=bid.bidder_id,
        amount=bid.amount,
        accepted_at=ctx.now,
        auto_accepted=auto,
    )
    unit.accepted_bid = accepted
    unit.buyer_id = bid.bidder_id
    ctx.emit(bid_accepted(unit, bid.bidder_id, bid.amount, ctx.now, auto=auto))
    transition(ctx, UnitStatus.ACCEPTED)
    logger.info(
        "Bid accepted: unit=%s bid=%s buyer=%s amount=%s auto=%s",
        unit.id, bid.id, bid.bidder_id, bid.amount, auto,
    )
    return accepted


class BidLedger:
    """Команды над ставками. Каждая команда — одна транзакция над лотом."""

    def __init__(self, transactions: UnitTransactions, directory: ActorDirectory):
        self.tx = transactions
        self.directory = directory

    async def place_bid(self, unit_id: int, bidder_id: str, amount: float, now: Optional[datetime] = None) -> Bid:
        async def op(ctx: UnitContext) -> Bid:
            await self.directory.require(ctx.session, bidder_id, roles=(ActorRole.CONSUMER,))
            unit = ctx.unit
            ensure_biddable(unit, ctx.now)
            if bidder_id == unit.producer_id:
                raise ActorUnauthorized("Нельзя делать ставку на свой лот", unit_id=unit.id, actor_id=bidder_id)

            floor = bid_floor(unit, bidder_id)
            if not math.isfinite(amount) or amount <= floor:
                raise BidTooLow(
                    f"Ставка должна быть больше {floor}",
                    unit_id=unit.id, amount=amount if math.isfinite(amount) else str(amount), floor=floor,
                )

            prior = unit.live_bid_of(bidder_id)
            if prior is not None:
                prior.status = BidStatus.SUPERSEDED
                prior.closed_at = ctx.now
                # Сначала закрываем старую ставку, иначе уникальный индекс живых ставок не даст вставить новую
                await ctx.session.flush()

            bid = Bid(bidder_id=bidder_id, amount=amount, placed_at=ctx.now, status=BidStatus.LIVE)
            unit.bids.append(bid)
            await ctx.session.flush()
            logger.info(
                "Bid placed: unit=%s bidder=%s amount=%s superseded=%s",
                unit.id, bidder_id, amount, prior.id if prior else None,
            )
            return bid

        return await self.tx.run(unit_id, op, now)

    async def withdraw_bid(self, unit_id: int, bidder_id: str, now: Optional[datetime] = None) -> Bid:
        async def op(ctx: UnitContext) -> Bid:
            unit = ctx.unit
            ensure_ledger_open(unit)
            bid = unit.live_bid_of(bidder_id)
            if bid is None:
                raise NoBidToWithdraw("У вас нет действующей ставки на этот лот", unit_id=unit.id, bidder_id=bidder_id)
            bid.status = BidStatus.WITHDRAWN
            bid.closed_at = ctx.now
            logger.info("Bid withdrawn: unit=%s bidder=%s bid=%s", unit.id, bidder_id, bid.id)
            return bid

        return await self.tx.run(unit_id, op, now)

    async def decline_bid(self, unit_id: int, bid_id: int, producer_id: str, now: Optional[datetime] = None) -> Bid:
        async def op(ctx: UnitContext) -> Bid:
            unit = ctx.unit
            require_producer(unit, producer_id)
            ensure_ledger_open(unit)
            bid = find_bid(unit, bid_id)
            if bid.status != BidStatus.LIVE:
                raise BidNotLive("Ставка больше не действует", unit_id=unit.id, bid_id=bid.id, status=bid.status.value)
            bid.status = BidStatus.DECLINED
            bid.closed_at = ctx.now
            logger.info("Bid declined: unit=%s bid=%s by=%s", unit.id, bid.id, producer_id)
            return bid

        return await self.tx.run(unit_id, op, now)

    async def accept_bid(
        self, unit_id: int, bid_id: int, producer_id: str, now: Optional[datetime] = None
    ) -> AcceptedBid:
        """Явное принятие конкретной ставки владельцем (не обязательно максимальной)."""
        async def op(ctx: UnitContext) -> AcceptedBid:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if unit.accepted_bid is not None:
                raise AlreadyAccepted(
                    "По лоту уже принята ставка", unit_id=unit.id, bid_id=unit.accepted_bid.bid_id
                )
            bid = find_bid(unit, bid_id)
            return apply_acceptance(ctx, bid)

        return await self.tx.run(unit_id, op, now)

    async def accept_highest(self, unit_id: int, now: Optional[datetime] = None) -> Optional[AcceptedBid]:
        """Автопринятие лучшей ставки после окончания торгов (включается AUTO_ACCEPT_HIGHEST_ON_CLOSE)."""
        async def op(ctx: UnitContext) -> Optional[AcceptedBid]:
            unit = ctx.unit
            closed = unit.bidding_end_at is not None and unit.bidding_end_at <= ctx.now
            ranked = rank_bids(unit.bids)
            if not closed or unit.status != UnitStatus.ACTIVE or unit.accepted_bid is not None or not ranked:
                ctx.mark_unchanged()
                return None
            return apply_acceptance(ctx, ranked[0], auto=True)

        return await self.tx.run(unit_id, op, now)

    @staticmethod
    async def highest_bids(session: AsyncSession, unit_id: int) -> List[Bid]:
        unit = await load_unit(session, unit_id)
        return rank_bids(unit.bids)
