"""
Очередь задач курьера: порядок показа назначенных доставок.

Порядок только для отображения, на переходы статусов не влияет.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.models import (
    TRACKING_STEPS_TOTAL, DeliveryAssignment, TrackingStep, UnitStatus, utcnow,
)
from services.lifecycle import effective_status

# Вес текущего незавершённого шага: чем раньше этап, тем выше в очереди
STAGE_WEIGHTS: Dict[TrackingStep, int] = {
    TrackingStep.ON_MY_WAY_TO_FARMER: 100,
    TrackingStep.REACHED_FARMER: 80,
    TrackingStep.PICKED_UP_ORDER: 60,
    TrackingStep.ON_MY_WAY_TO_BUYER: 40,
    TrackingStep.REACHED_BUYER: 20,
    TrackingStep.DELIVERED_ORDER: 10,
}

STATUS_BONUS: Dict[UnitStatus, int] = {
    UnitStatus.READY: 5,
    UnitStatus.PICKED_UP: 3,
}

DISTANCE_PENALTY_PER_KM = 0.1


@dataclass(frozen=True)
class QueueItem:
    unit_id: int
    status: UnitStatus
    next_step: TrackingStep
    distance_km: float
    amount: float
    estimated_delivery_at: Optional[datetime]
    score: float


def priority_score(next_step: TrackingStep, status: UnitStatus, distance_km: float) -> float:
    return STAGE_WEIGHTS[next_step] + STATUS_BONUS.get(status, 0) - DISTANCE_PENALTY_PER_KM * distance_km


def prioritize(items: Iterable[QueueItem]) -> List[QueueItem]:
    """Полный порядок: score по убыванию, при равенстве — по id лота."""
    return sorted(items, key=lambda i: (-i.score, i.unit_id))


def queue_item(assignment: DeliveryAssignment, now: datetime) -> Optional[QueueItem]:
    """Элемент очереди или None для завершённых и отменённых доставок."""
    if assignment.completed_steps >= TRACKING_STEPS_TOTAL:
        return None
    status, _ = effective_status(assignment.unit, now)
    if status.is_terminal:
        return None
    step = assignment.next_step
    return QueueItem(
        unit_id=assignment.unit_id,
        status=status,
        next_step=step,
        distance_km=assignment.distance_km,
        amount=assignment.amount,
        estimated_delivery_at=assignment.estimated_delivery_at,
        score=priority_score(step, status, assignment.distance_km),
    )


async def get_work_queue(
    session: AsyncSession, courier_id: str, now: Optional[datetime] = None
) -> List[QueueItem]:
    now = now or utcnow()
    stmt = (
        select(DeliveryAssignment)
        .where(
            DeliveryAssignment.courier_id == courier_id,
            DeliveryAssignment.completed_steps < TRACKING_STEPS_TOTAL,
        )
        .options(selectinload(DeliveryAssignment.unit))
    )
    result = await session.execute(stmt)
    items = (queue_item(a, now) for a in result.scalars().all())
    return prioritize(i for i in items if i is not None)
