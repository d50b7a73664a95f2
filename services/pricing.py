"""
Ценовая политика доставки: минимум по расстоянию, допустимый диапазон, шаг изменения.
"""
import logging
import math
from typing import Optional

from config import config
from services.errors import GeoDataUnavailable, PriceOutOfRange
from services.geo import Coordinate, distance_km

logger = logging.getLogger(__name__)


def _round_money(value: float) -> float:
    return round(value, 2)


def strict_distance(a: Optional[Coordinate], b: Optional[Coordinate]) -> float:
    if a is None or b is None:
        raise GeoDataUnavailable("Нет координат одной из сторон", has_a=a is not None, has_b=b is not None)
    return distance_km(a, b)


def resolve_distance(a: Optional[Coordinate], b: Optional[Coordinate]) -> float:
    """
    Расстояние между сторонами сделки.
    Если координат нет — используется расстояние по умолчанию (DEFAULT_DISTANCE_KM).
    """
    try:
        return strict_distance(a, b)
    except GeoDataUnavailable as e:
        logger.info("Geo data unavailable (%s), using default distance %.2f km", e.context, config.DEFAULT_DISTANCE_KM)
        return config.DEFAULT_DISTANCE_KM


def delivery_floor(distance: float, rate_per_km: Optional[float] = None) -> float:
    """Минимальная сумма доставки = расстояние × ставка за км."""
    rate = config.DELIVERY_RATE_PER_KM if rate_per_km is None else rate_per_km
    return _round_money(distance * rate)


def delivery_ceiling(floor: float) -> float:
    return _round_money(floor * config.DELIVERY_MAX_MULTIPLIER)


def ensure_finite(amount: float, floor: float) -> None:
    """Сумма должна быть конечным числом (не NaN и не inf)."""
    if not math.isfinite(amount):
        raise PriceOutOfRange(
            f"Сумма {amount} не является числом",
            bound="finite", limit=floor, amount=str(amount),
        )


def validate_proposal(amount: float, floor: float) -> bool:
    """
    Предложение курьера должно быть строго выше минимума и не выше потолка:
    floor < amount <= 2×floor.
    """
    ensure_finite(amount, floor)
    ceiling = delivery_ceiling(floor)
    if amount <= floor:
        raise PriceOutOfRange(
            f"Сумма {amount} должна быть больше минимальной {floor}",
            bound="floor_exclusive", limit=floor, amount=amount,
        )
    if amount > ceiling:
        raise PriceOutOfRange(
            f"Сумма {amount} превышает максимальную {ceiling}",
            bound="ceiling", limit=ceiling, amount=amount,
        )
    return True


def validate_lock(amount: float, floor: float) -> bool:
    """Фиксация суммы: начиная с минимума, floor <= amount <= 2×floor."""
    ensure_finite(amount, floor)
    ceiling = delivery_ceiling(floor)
    if amount < floor:
        raise PriceOutOfRange(
            f"Сумма {amount} меньше минимальной {floor}",
            bound="floor", limit=floor, amount=amount,
        )
    if amount > ceiling:
        raise PriceOutOfRange(
            f"Сумма {amount} превышает максимальную {ceiling}",
            bound="ceiling", limit=ceiling, amount=amount,
        )
    return True


def adjust_amount(amount: float, floor: float, direction: int, step: Optional[float] = None) -> float:
    """
    Сдвинуть сумму на шаг вверх (direction > 0) или вниз (direction < 0).
    Результат не выходит за [floor, 2×floor].
    """
    step = config.DELIVERY_ADJUST_STEP if step is None else step
    if direction == 0:
        return _round_money(amount)
    moved = amount + step if direction > 0 else amount - step
    return _round_money(min(max(moved, floor), delivery_ceiling(floor)))
