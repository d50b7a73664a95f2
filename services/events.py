"""
События жизненного цикла для слоя уведомлений.

События собираются внутри транзакции и отправляются только после commit.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from database.models import TradableUnit, UnitStatus


class EventKind(str, enum.Enum):
    BID_ACCEPTED = "bid_accepted"
    DELIVERY_ASSIGNED = "delivery_assigned"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class DomainEvent:
    kind: EventKind
    unit_id: int
    recipients: Tuple[str, ...]
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)


def unit_parties(unit: TradableUnit) -> Tuple[str, ...]:
    """Фермер, покупатель и назначенный курьер (без повторов)."""
    parties: List[str] = [unit.producer_id]
    if unit.buyer_id:
        parties.append(unit.buyer_id)
    if unit.assignment is not None:
        parties.append(unit.assignment.courier_id)
    return tuple(dict.fromkeys(parties))


def status_changed(
    unit: TradableUnit,
    old_status: UnitStatus,
    new_status: UnitStatus,
    now: datetime,
    recipients: Optional[Tuple[str, ...]] = None,
) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.STATUS_CHANGED,
        unit_id=unit.id,
        recipients=recipients or unit_parties(unit),
        occurred_at=now,
        payload={"old_status": old_status.value, "new_status": new_status.value},
    )


def bid_accepted(unit: TradableUnit, buyer_id: str, amount: float, now: datetime, auto: bool = False) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.BID_ACCEPTED,
        unit_id=unit.id,
        recipients=(buyer_id, unit.producer_id),
        occurred_at=now,
        payload={"buyer_id": buyer_id, "amount": amount, "auto": auto},
    )


def delivery_assigned(unit: TradableUnit, courier_id: str, amount: float, now: datetime) -> DomainEvent:
    recipients = [courier_id, unit.producer_id]
    if unit.buyer_id:
        recipients.append(unit.buyer_id)
    return DomainEvent(
        kind=EventKind.DELIVERY_ASSIGNED,
        unit_id=unit.id,
        recipients=tuple(dict.fromkeys(recipients)),
        occurred_at=now,
        payload={"courier_id": courier_id, "amount": amount},
    )
