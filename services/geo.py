import math
from typing import NamedTuple
from functools import lru_cache

EARTH_RADIUS_KM = 6371


class Coordinate(NamedTuple):
    latitude: float
    longitude: float


# Haversine formula to calculate distance between two lat/lon points
# Кешируем результаты для часто используемых координат
@lru_cache(maxsize=1000)
def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками на Земле по формуле Haversine.
    Результаты кешируются для оптимизации.
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2)**2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Расстояние по большой окружности в км, округлённое до 2 знаков."""
    return round(haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude), 2)
