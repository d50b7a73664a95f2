"""
Жизненный цикл лота/заказа: создание, подготовка, трекинг курьера, отмена.

active → accepted → preparing → ready → picked_up → delivered; cancelled — до забора курьером.
picked_up и delivered выставляются только шагами трекинга назначенного курьера.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    ActorRole, BidStatus, DeliveryAssignment, ProposalStatus, TrackingStep,
    TradableUnit, UnitKind, UnitStatus,
)
from services.actors import ActorDirectory
from services.errors import (
    ActorUnauthorized, InvalidArgument, InvalidBiddingWindow, InvalidTransition,
    StepNotEnabled, UnitNotBiddable,
)
from services.lifecycle import require_producer, settle_preparation, transition
from services.transactions import UnitContext, UnitTransactions, load_unit

logger = logging.getLogger(__name__)


def _require_positive(name: str, value: Optional[float]) -> None:
    if value is not None and value <= 0:
        raise InvalidArgument(f"Значение {name} должно быть больше нуля", field=name, value=value)


def check_bidding_window(
    start_at: Optional[datetime], end_at: Optional[datetime], now: datetime
) -> None:
    if end_at is None:
        return
    if end_at <= now:
        raise InvalidBiddingWindow(
            "Окончание торгов должно быть в будущем", end_at=end_at.isoformat(), now=now.isoformat()
        )
    if start_at is not None and end_at <= start_at:
        raise InvalidBiddingWindow(
            "Окончание торгов должно быть позже начала",
            start_at=start_at.isoformat(), end_at=end_at.isoformat(),
        )


def require_courier(unit: TradableUnit, courier_id: str) -> DeliveryAssignment:
    assignment = unit.assignment
    if assignment is None or assignment.courier_id != courier_id:
        raise ActorUnauthorized(
            "Шаги доставки отмечает только назначенный курьер", unit_id=unit.id, actor_id=courier_id
        )
    return assignment


class FulfillmentStateMachine:

    def __init__(self, transactions: UnitTransactions, directory: ActorDirectory):
        self.tx = transactions
        self.directory = directory

    # --- Создание и редактирование ---

    async def create_listing(
        self,
        producer_id: str,
        description: str,
        quantity: float,
        base_price: float,
        bidding_start_at: Optional[datetime] = None,
        bidding_end_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> TradableUnit:
        """Фермер выставляет лот на торги."""
        async def op(session: AsyncSession, at: datetime):
            await self.directory.require(session, producer_id, roles=(ActorRole.PRODUCER,))
            _require_positive("quantity", quantity)
            _require_positive("base_price", base_price)
            check_bidding_window(bidding_start_at or at, bidding_end_at, at)
            unit = TradableUnit(
                kind=UnitKind.LISTING,
                producer_id=producer_id,
                description=description,
                quantity=quantity,
                base_price=base_price,
                status=UnitStatus.ACTIVE,
                created_at=at,
                updated_at=at,
                bids=[],
                proposals=[],
                accepted_bid=None,
                assignment=None,
                bidding_start_at=bidding_start_at or at,
                bidding_end_at=bidding_end_at,
            )
            session.add(unit)
            await session.flush()
            logger.info("Listing created: id=%s producer=%s base_price=%s", unit.id, producer_id, base_price)
            return unit, []

        return await self.tx.create(op, now)

    async def place_order(
        self,
        buyer_id: str,
        producer_id: str,
        description: str,
        quantity: float,
        price: float,
        now: Optional[datetime] = None,
    ) -> TradableUnit:
        """Покупатель оформляет заказ по фиксированной цене; фермер подтверждает его отдельно."""
        async def op(session: AsyncSession, at: datetime):
            await self.directory.require(session, buyer_id, roles=(ActorRole.CONSUMER,))
            await self.directory.require(session, producer_id, roles=(ActorRole.PRODUCER,))
            _require_positive("quantity", quantity)
            _require_positive("price", price)
            unit = TradableUnit(
                kind=UnitKind.ORDER,
                producer_id=producer_id,
                buyer_id=buyer_id,
                description=description,
                quantity=quantity,
                base_price=price,
                status=UnitStatus.ACTIVE,
                created_at=at,
                updated_at=at,
                bids=[],
                proposals=[],
                accepted_bid=None,
                assignment=None,
            )
            session.add(unit)
            await session.flush()
            logger.info("Order placed: id=%s buyer=%s producer=%s price=%s", unit.id, buyer_id, producer_id, price)
            return unit, []

        return await self.tx.create(op, now)

    async def confirm_order(self, unit_id: int, producer_id: str, now: Optional[datetime] = None) -> TradableUnit:
        async def op(ctx: UnitContext) -> TradableUnit:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if unit.kind != UnitKind.ORDER:
                raise InvalidTransition(
                    "Лот с торгами подтверждается принятием ставки",
                    unit_id=unit.id, current=unit.status.value, target=UnitStatus.ACCEPTED.value,
                )
            transition(ctx, UnitStatus.ACCEPTED)
            return unit

        return await self.tx.run(unit_id, op, now)

    async def edit_listing(
        self,
        unit_id: int,
        producer_id: str,
        description: Optional[str] = None,
        quantity: Optional[float] = None,
        base_price: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> TradableUnit:
        """Описание и количество — пока лот активен; цена — только без живых ставок."""
        async def op(ctx: UnitContext) -> TradableUnit:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if unit.status != UnitStatus.ACTIVE:
                raise UnitNotBiddable(
                    "Лот больше нельзя редактировать", unit_id=unit.id, reason="closed", status=unit.status.value
                )
            _require_positive("quantity", quantity)
            _require_positive("base_price", base_price)
            if base_price is not None and base_price != unit.base_price and unit.live_bids:
                raise InvalidArgument(
                    "Нельзя менять цену, пока есть действующие ставки",
                    field="base_price", value=base_price, live_bids=len(unit.live_bids),
                )
            if description is not None:
                unit.description = description
            if quantity is not None:
                unit.quantity = quantity
            if base_price is not None:
                unit.base_price = base_price
            logger.info("Listing edited: id=%s by=%s", unit.id, producer_id)
            return unit

        return await self.tx.run(unit_id, op, now)

    async def set_bidding_end(
        self, unit_id: int, producer_id: str, end_at: datetime, now: Optional[datetime] = None
    ) -> TradableUnit:
        async def op(ctx: UnitContext) -> TradableUnit:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if unit.kind != UnitKind.LISTING or unit.status != UnitStatus.ACTIVE or unit.accepted_bid is not None:
                raise InvalidBiddingWindow(
                    "Срок торгов можно менять только у открытого лота",
                    unit_id=unit.id, status=unit.status.value,
                )
            check_bidding_window(unit.bidding_start_at, end_at, ctx.now)
            unit.bidding_end_at = end_at
            logger.info("Bidding end updated: unit=%s end_at=%s", unit.id, end_at.isoformat())
            return unit

        return await self.tx.run(unit_id, op, now)

    # --- Подготовка ---

    async def start_preparation(
        self, unit_id: int, producer_id: str, minutes: int, now: Optional[datetime] = None
    ) -> TradableUnit:
        """
        accepted → preparing с таймером на minutes минут.
        Повторный вызов во время подготовки перезапускает таймер от текущего момента.
        """
        async def op(ctx: UnitContext) -> TradableUnit:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if minutes is None or minutes <= 0:
                raise InvalidArgument("Время подготовки должно быть больше нуля", field="minutes", value=minutes)
            settle_preparation(ctx)
            if unit.status == UnitStatus.PREPARING:
                unit.prep_time_minutes = minutes
                unit.prep_started_at = ctx.now
                logger.info("Preparation time updated: unit=%s minutes=%s", unit.id, minutes)
                return unit
            unit.prep_time_minutes = minutes
            transition(ctx, UnitStatus.PREPARING)
            return unit

        return await self.tx.run(unit_id, op, now)

    async def mark_ready(self, unit_id: int, producer_id: str, now: Optional[datetime] = None) -> TradableUnit:
        """Ручная готовность. Если таймер успел раньше — ничего не меняется."""
        async def op(ctx: UnitContext) -> TradableUnit:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if settle_preparation(ctx):
                return unit
            if unit.status == UnitStatus.PREPARING:
                transition(ctx, UnitStatus.READY)
                return unit
            if unit.status in (UnitStatus.READY, UnitStatus.PICKED_UP, UnitStatus.DELIVERED):
                ctx.mark_unchanged()
                return unit
            raise InvalidTransition(
                f"Переход {unit.status.value} → {UnitStatus.READY.value} недопустим",
                unit_id=unit.id, current=unit.status.value, target=UnitStatus.READY.value,
            )

        return await self.tx.run(unit_id, op, now)

    async def settle(self, unit_id: int, now: Optional[datetime] = None) -> bool:
        """Закоммитить истёкший таймер подготовки (фоновая проверка)."""
        async def op(ctx: UnitContext) -> bool:
            changed = settle_preparation(ctx)
            if not changed:
                ctx.mark_unchanged()
            return changed

        return await self.tx.run(unit_id, op, now)

    # --- Трекинг курьера ---

    async def advance_tracking(
        self, unit_id: int, courier_id: str, step: TrackingStep, now: Optional[datetime] = None
    ) -> DeliveryAssignment:
        """Отметить следующий шаг доставки. Шаги идут строго по порядку, каждый один раз."""
        async def op(ctx: UnitContext) -> DeliveryAssignment:
            unit = ctx.unit
            assignment = require_courier(unit, courier_id)
            expected = assignment.next_step
            if unit.status.is_terminal or expected is None or step != expected:
                raise StepNotEnabled(
                    f"Шаг {step.flag} сейчас недоступен",
                    unit_id=unit.id, step=step.flag,
                    expected=expected.flag if expected else None, status=unit.status.value,
                )
            if step == TrackingStep.PICKED_UP_ORDER:
                settle_preparation(ctx)
                if unit.status != UnitStatus.READY:
                    raise StepNotEnabled(
                        "Заказ ещё не готов к выдаче",
                        unit_id=unit.id, step=step.flag, expected=expected.flag, status=unit.status.value,
                    )

            assignment.completed_steps = int(step)
            assignment.last_step_at = ctx.now
            if step == TrackingStep.PICKED_UP_ORDER:
                transition(ctx, UnitStatus.PICKED_UP)
            elif step == TrackingStep.DELIVERED_ORDER:
                assignment.delivered_at = ctx.now
                transition(ctx, UnitStatus.DELIVERED)
            logger.info("Tracking step set: unit=%s courier=%s step=%s", unit.id, courier_id, step.flag)
            return assignment

        return await self.tx.run(unit_id, op, now)

    # --- Отмена ---

    async def cancel_unit(
        self, unit_id: int, producer_id: str, reason: str = "", now: Optional[datetime] = None
    ) -> TradableUnit:
        async def op(ctx: UnitContext) -> TradableUnit:
            unit = ctx.unit
            require_producer(unit, producer_id)
            transition(ctx, UnitStatus.CANCELLED)
            unit.cancel_reason = reason or None
            for bid in unit.live_bids:
                bid.status = BidStatus.DECLINED
                bid.closed_at = ctx.now
            for proposal in unit.pending_proposals:
                proposal.status = ProposalStatus.REJECTED
                proposal.closed_at = ctx.now
            return unit

        return await self.tx.run(unit_id, op, now)

    @staticmethod
    async def get_unit(session: AsyncSession, unit_id: int) -> TradableUnit:
        return await load_unit(session, unit_id)
