"""
Оценки после доставки и статистика курьера.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.models import (
    ActorRole, DeliveryAssignment, Rating, TradableUnit, UnitStatus,
)
from services.errors import RatingNotAllowed
from services.transactions import UnitContext, UnitTransactions

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5


@dataclass(frozen=True)
class CourierStats:
    courier_id: str
    earnings: float
    delivered_count: int
    active_count: int
    on_time_rate: Optional[float]
    average_rating: Optional[float]
    ratings_count: int


def rating_subject_role(unit: TradableUnit, rater_id: str, subject_id: str) -> ActorRole:
    """
    Кто кого может оценить: покупатель — фермера и курьера, фермер — курьера.
    Возвращает роль оцениваемого или бросает RatingNotAllowed.
    """
    courier_id = unit.assignment.courier_id if unit.assignment else None
    if rater_id == unit.buyer_id and subject_id == unit.producer_id:
        return ActorRole.PRODUCER
    if rater_id in (unit.buyer_id, unit.producer_id) and courier_id and subject_id == courier_id:
        return ActorRole.COURIER
    raise RatingNotAllowed(
        "Этот участник не может оценить выбранного участника",
        unit_id=unit.id, rater_id=rater_id, subject_id=subject_id,
    )


class RatingService:

    def __init__(self, transactions: UnitTransactions):
        self.tx = transactions

    async def rate(
        self,
        unit_id: int,
        rater_id: str,
        subject_id: str,
        score: int,
        comment: str = "",
        now: Optional[datetime] = None,
    ) -> Rating:
        async def op(ctx: UnitContext) -> Rating:
            unit = ctx.unit
            if unit.status != UnitStatus.DELIVERED:
                raise RatingNotAllowed(
                    "Оценить можно только доставленный заказ", unit_id=unit.id, status=unit.status.value
                )
            if not MIN_SCORE <= score <= MAX_SCORE:
                raise RatingNotAllowed(
                    f"Оценка должна быть от {MIN_SCORE} до {MAX_SCORE}", unit_id=unit.id, score=score
                )
            subject_role = rating_subject_role(unit, rater_id, subject_id)
            existing = await ctx.session.execute(
                select(Rating.id).where(
                    Rating.unit_id == unit.id,
                    Rating.rater_id == rater_id,
                    Rating.subject_id == subject_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise RatingNotAllowed(
                    "Оценка уже выставлена", unit_id=unit.id, rater_id=rater_id, subject_id=subject_id
                )
            rating = Rating(
                unit_id=unit.id,
                rater_id=rater_id,
                subject_id=subject_id,
                subject_role=subject_role,
                score=score,
                comment=comment or "",
                rated_at=ctx.now,
            )
            ctx.session.add(rating)
            await ctx.session.flush()
            # Оценка не меняет состояние лота
            ctx.mark_unchanged()
            logger.info(
                "Rating saved: unit=%s rater=%s subject=%s score=%s", unit.id, rater_id, subject_id, score
            )
            return rating

        return await self.tx.run(unit_id, op, now)

    @staticmethod
    async def courier_stats(session: AsyncSession, courier_id: str) -> CourierStats:
        result = await session.execute(
            select(DeliveryAssignment)
            .where(DeliveryAssignment.courier_id == courier_id)
            .options(selectinload(DeliveryAssignment.unit))
        )
        assignments = result.scalars().all()

        delivered = [a for a in assignments if a.delivered_at is not None]
        active = [
            a for a in assignments
            if a.delivered_at is None and not a.unit.status.is_terminal
        ]
        with_estimate = [a for a in delivered if a.estimated_delivery_at is not None]
        on_time = [a for a in with_estimate if a.delivered_at <= a.estimated_delivery_at]

        avg_row = await session.execute(
            select(func.avg(Rating.score), func.count(Rating.id)).where(
                Rating.subject_id == courier_id,
                Rating.subject_role == ActorRole.COURIER,
            )
        )
        avg_score, ratings_count = avg_row.one()

        return CourierStats(
            courier_id=courier_id,
            earnings=round(sum(a.amount for a in delivered), 2),
            delivered_count=len(delivered),
            active_count=len(active),
            on_time_rate=round(len(on_time) / len(with_estimate), 4) if with_estimate else None,
            average_rating=round(float(avg_score), 2) if avg_score is not None else None,
            ratings_count=ratings_count or 0,
        )
