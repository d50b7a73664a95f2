"""
Торг с курьерами за доставку лота.

Два взаимоисключающих режима (режим фиксируется первым действием по лоту):
- LOCK: курьер видит минимальную сумму, двигает её шагом и фиксирует; первый успевший побеждает;
- PROPOSAL: курьеры предлагают суммы, фермер принимает ровно одно предложение.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from database.models import (
    ActorRole, DeliveryAssignment, DeliveryProposal, NegotiationMode, ProposalStatus,
    TradableUnit,
)
from services import pricing
from services.actors import ActorDirectory
from services.errors import (
    AlreadyAssigned, AlreadyLocked, NegotiationModeConflict, ProposalNotAllowed,
    ProposalNotFound,
)
from services.events import delivery_assigned
from services.lifecycle import NEGOTIABLE_STATUSES, prep_due_at, require_producer
from services.transactions import UnitContext, UnitTransactions, load_unit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryQuote:
    unit_id: int
    distance_km: float
    floor: float
    ceiling: float
    step: float
    amount: float
    locked: bool


def ensure_negotiable(unit: TradableUnit) -> None:
    if unit.status not in NEGOTIABLE_STATUSES or unit.buyer_id is None:
        raise ProposalNotAllowed(
            "Доставка по лоту сейчас не обсуждается",
            unit_id=unit.id, status=unit.status.value,
        )


def ensure_mode(unit: TradableUnit, mode: NegotiationMode) -> None:
    if unit.negotiation_mode is not None and unit.negotiation_mode != mode:
        raise NegotiationModeConflict(
            f"По лоту уже выбран режим {unit.negotiation_mode.value}",
            unit_id=unit.id, mode=unit.negotiation_mode.value, requested=mode.value,
        )


def estimate_delivery_at(unit: TradableUnit, distance_km: float, now: datetime) -> datetime:
    """Ожидаемое время доставки: от готовности (или сейчас) + забор + путь со средней скоростью."""
    start = now
    due = prep_due_at(unit)
    if unit.ready_at is not None:
        start = max(start, unit.ready_at)
    elif due is not None:
        start = max(start, due)
    travel_minutes = distance_km / config.COURIER_AVG_SPEED_KMH * 60
    return start + timedelta(minutes=config.COURIER_PICKUP_BUFFER_MINUTES + travel_minutes)


class DeliveryNegotiation:

    def __init__(self, transactions: UnitTransactions, directory: ActorDirectory):
        self.tx = transactions
        self.directory = directory

    async def unit_distance(self, session: AsyncSession, unit: TradableUnit) -> float:
        """Расстояние фермер → покупатель (или расстояние по умолчанию)."""
        producer = await self.directory.get(session, unit.producer_id)
        buyer = await self.directory.get(session, unit.buyer_id) if unit.buyer_id else None
        return pricing.resolve_distance(
            producer.coordinate if producer else None,
            buyer.coordinate if buyer else None,
        )

    def _assign(
        self, ctx: UnitContext, courier_id: str, amount: float, mode: NegotiationMode, distance: float
    ) -> DeliveryAssignment:
        unit = ctx.unit
        assignment = DeliveryAssignment(
            courier_id=courier_id,
            amount=amount,
            mode=mode,
            distance_km=distance,
            locked_at=ctx.now,
            completed_steps=0,
            estimated_delivery_at=estimate_delivery_at(unit, distance, ctx.now),
        )
        unit.assignment = assignment
        unit.negotiation_mode = mode
        ctx.emit(delivery_assigned(unit, courier_id, amount, ctx.now))
        logger.info(
            "Delivery assigned: unit=%s courier=%s amount=%s mode=%s distance=%.2f",
            unit.id, courier_id, amount, mode.value, distance,
        )
        return assignment

    async def preview(
        self, session: AsyncSession, unit_id: int, courier_id: str, now: datetime, steps: int = 0
    ) -> DeliveryQuote:
        """
        Стартовая сумма для курьера: минимум по расстоянию либо уже зафиксированная/предложенная.
        steps сдвигает незафиксированную сумму на steps × шаг в пределах [floor, 2×floor].
        """
        await self.directory.require(session, courier_id, roles=(ActorRole.COURIER,))
        unit = await load_unit(session, unit_id)
        if unit.assignment is None:
            ensure_negotiable(unit)
        distance = await self.unit_distance(session, unit)
        floor = pricing.delivery_floor(distance)
        amount = floor
        locked = False
        if unit.assignment is not None and unit.assignment.courier_id == courier_id:
            amount, locked = unit.assignment.amount, True
        elif unit.pending_proposal_of(courier_id) is not None:
            amount = unit.pending_proposal_of(courier_id).amount
        if not locked:
            for _ in range(abs(steps)):
                amount = pricing.adjust_amount(amount, floor, steps)
        return DeliveryQuote(
            unit_id=unit.id,
            distance_km=distance,
            floor=floor,
            ceiling=pricing.delivery_ceiling(floor),
            step=config.DELIVERY_ADJUST_STEP,
            amount=amount,
            locked=locked,
        )

    # --- Lock mode ---

    async def lock(
        self, unit_id: int, courier_id: str, amount: float, now: Optional[datetime] = None
    ) -> DeliveryAssignment:
        async def op(ctx: UnitContext) -> DeliveryAssignment:
            await self.directory.require(ctx.session, courier_id, roles=(ActorRole.COURIER,))
            unit = ctx.unit
            if unit.assignment is not None:
                raise AlreadyLocked(
                    "Доставку уже зафиксировал другой курьер",
                    unit_id=unit.id, courier_id=unit.assignment.courier_id,
                )
            ensure_negotiable(unit)
            ensure_mode(unit, NegotiationMode.LOCK)
            distance = await self.unit_distance(ctx.session, unit)
            pricing.validate_lock(amount, pricing.delivery_floor(distance))
            return self._assign(ctx, courier_id, amount, NegotiationMode.LOCK, distance)

        return await self.tx.run(unit_id, op, now)

    # --- Proposal mode ---

    async def propose(
        self, unit_id: int, courier_id: str, amount: float, now: Optional[datetime] = None
    ) -> DeliveryProposal:
        async def op(ctx: UnitContext) -> DeliveryProposal:
            await self.directory.require(ctx.session, courier_id, roles=(ActorRole.COURIER,))
            unit = ctx.unit
            if unit.assignment is not None:
                raise AlreadyAssigned("Курьер для лота уже выбран", unit_id=unit.id)
            ensure_negotiable(unit)
            ensure_mode(unit, NegotiationMode.PROPOSAL)
            distance = await self.unit_distance(ctx.session, unit)
            pricing.validate_proposal(amount, pricing.delivery_floor(distance))

            unit.negotiation_mode = NegotiationMode.PROPOSAL
            proposal = unit.pending_proposal_of(courier_id)
            if proposal is not None:
                # Повторное предложение заменяет сумму одной записью
                proposal.amount = amount
                proposal.proposed_at = ctx.now
            else:
                proposal = DeliveryProposal(
                    courier_id=courier_id, amount=amount, proposed_at=ctx.now, status=ProposalStatus.PENDING
                )
                unit.proposals.append(proposal)
            await ctx.session.flush()
            logger.info("Delivery proposed: unit=%s courier=%s amount=%s", unit.id, courier_id, amount)
            return proposal

        return await self.tx.run(unit_id, op, now)

    async def withdraw_proposal(
        self, unit_id: int, courier_id: str, now: Optional[datetime] = None
    ) -> DeliveryProposal:
        async def op(ctx: UnitContext) -> DeliveryProposal:
            proposal = ctx.unit.pending_proposal_of(courier_id)
            if proposal is None:
                raise ProposalNotFound("Нет действующего предложения", unit_id=ctx.unit.id, courier_id=courier_id)
            proposal.status = ProposalStatus.WITHDRAWN
            proposal.closed_at = ctx.now
            logger.info("Delivery proposal withdrawn: unit=%s courier=%s", ctx.unit.id, courier_id)
            return proposal

        return await self.tx.run(unit_id, op, now)

    async def accept_proposal(
        self, unit_id: int, courier_id: str, producer_id: str, now: Optional[datetime] = None
    ) -> DeliveryAssignment:
        async def op(ctx: UnitContext) -> DeliveryAssignment:
            unit = ctx.unit
            require_producer(unit, producer_id)
            if unit.assignment is not None:
                raise AlreadyAssigned(
                    "Курьер для лота уже выбран",
                    unit_id=unit.id, courier_id=unit.assignment.courier_id,
                )
            proposal = unit.pending_proposal_of(courier_id)
            if proposal is None:
                raise ProposalNotFound("Предложение курьера не найдено", unit_id=unit.id, courier_id=courier_id)
            ensure_negotiable(unit)

            distance = await self.unit_distance(ctx.session, unit)
            assignment = self._assign(ctx, courier_id, proposal.amount, NegotiationMode.PROPOSAL, distance)
            for other in unit.pending_proposals:
                other.status = ProposalStatus.ACCEPTED if other is proposal else ProposalStatus.REJECTED
                other.closed_at = ctx.now
            return assignment

        return await self.tx.run(unit_id, op, now)
