"""
Переходы статусов лота.

Статус двигается только вперёд по STATUS_PRIORITY; отмена возможна до забора курьером.
Таймер подготовки не хранится в памяти: срок всегда вычисляется из
prep_started_at + prep_time_minutes.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from database.models import TradableUnit, UnitStatus
from services.errors import ActorUnauthorized, InvalidTransition
from services.events import status_changed
from services.transactions import UnitContext

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[UnitStatus, FrozenSet[UnitStatus]] = {
    UnitStatus.ACTIVE: frozenset({UnitStatus.ACCEPTED, UnitStatus.CANCELLED}),
    UnitStatus.ACCEPTED: frozenset({UnitStatus.PREPARING, UnitStatus.CANCELLED}),
    UnitStatus.PREPARING: frozenset({UnitStatus.READY, UnitStatus.CANCELLED}),
    UnitStatus.READY: frozenset({UnitStatus.PICKED_UP, UnitStatus.CANCELLED}),
    UnitStatus.PICKED_UP: frozenset({UnitStatus.DELIVERED}),
    UnitStatus.DELIVERED: frozenset(),
    UnitStatus.CANCELLED: frozenset(),
}

STATUS_TIMESTAMPS: Dict[UnitStatus, str] = {
    UnitStatus.ACCEPTED: "accepted_at",
    UnitStatus.PREPARING: "prep_started_at",
    UnitStatus.READY: "ready_at",
    UnitStatus.PICKED_UP: "picked_up_at",
    UnitStatus.DELIVERED: "delivered_at",
    UnitStatus.CANCELLED: "cancelled_at",
}

# Статусы, в которых открыт торг с курьерами
NEGOTIABLE_STATUSES = frozenset({UnitStatus.ACCEPTED, UnitStatus.PREPARING, UnitStatus.READY})


def can_transition(current: UnitStatus, target: UnitStatus) -> bool:
    if current.is_terminal:
        return False
    return target in ALLOWED_TRANSITIONS[current] and target.priority > current.priority


def transition(ctx: UnitContext, target: UnitStatus, at: Optional[datetime] = None) -> None:
    """Перевести лот в target, проставить метку времени и добавить событие."""
    unit = ctx.unit
    old_status = unit.status
    if not can_transition(old_status, target):
        raise InvalidTransition(
            f"Переход {old_status.value} → {target.value} недопустим",
            unit_id=unit.id, current=old_status.value, target=target.value,
        )
    stamp = at or ctx.now
    unit.status = target
    setattr(unit, STATUS_TIMESTAMPS[target], stamp)
    ctx.emit(status_changed(unit, old_status, target, ctx.now))
    logger.info("Unit status updated: id=%s, %s -> %s", unit.id, old_status.value, target.value)


def prep_due_at(unit: TradableUnit) -> Optional[datetime]:
    """Когда заканчивается подготовка (None — таймер не запущен)."""
    if unit.prep_started_at is None or unit.prep_time_minutes is None:
        return None
    return unit.prep_started_at + timedelta(minutes=unit.prep_time_minutes)


def effective_status(unit: TradableUnit, now: datetime) -> Tuple[UnitStatus, Optional[datetime]]:
    """
    Статус с учётом истёкшего таймера подготовки (для чтения).
    Совпадает с тем, что закоммитит фоновая проверка.
    """
    if unit.status == UnitStatus.PREPARING:
        due = prep_due_at(unit)
        if due is not None and due <= now:
            return UnitStatus.READY, due
    return unit.status, unit.ready_at


def settle_preparation(ctx: UnitContext) -> bool:
    """Закоммитить preparing → ready, если срок подготовки истёк. Идемпотентно."""
    unit = ctx.unit
    if unit.status != UnitStatus.PREPARING:
        return False
    due = prep_due_at(unit)
    if due is None or due > ctx.now:
        return False
    transition(ctx, UnitStatus.READY, at=due)
    return True


def require_producer(unit: TradableUnit, actor_id: str) -> None:
    if unit.producer_id != actor_id:
        raise ActorUnauthorized(
            "Действие доступно только владельцу лота",
            unit_id=unit.id, actor_id=actor_id,
        )
