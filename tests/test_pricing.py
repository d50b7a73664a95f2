import pytest

from services import pricing
from services.errors import PriceOutOfRange
from services.geo import Coordinate, distance_km


def test_distance_one_degree_on_equator():
    assert distance_km(Coordinate(0, 0), Coordinate(0, 1)) == 111.19


def test_distance_is_symmetric_and_zero_for_same_point():
    a, b = Coordinate(41.3111, 69.2797), Coordinate(39.6542, 66.9597)
    assert distance_km(a, b) == distance_km(b, a)
    assert distance_km(a, a) == 0


def test_missing_coordinate_falls_back_to_default_distance():
    assert pricing.resolve_distance(None, Coordinate(41.3, 69.2)) == 10.0
    assert pricing.resolve_distance(Coordinate(41.3, 69.2), None) == 10.0


def test_floor_from_distance():
    assert pricing.delivery_floor(12.34) == 123.4
    assert pricing.delivery_ceiling(123.4) == 246.8


def test_proposal_must_be_strictly_above_floor():
    floor = pricing.delivery_floor(12.34)
    with pytest.raises(PriceOutOfRange) as exc:
        pricing.validate_proposal(123.4, floor)
    assert exc.value.bound == "floor_exclusive"
    assert pricing.validate_proposal(123.5, floor)


def test_proposal_above_ceiling_rejected():
    floor = pricing.delivery_floor(12.34)
    with pytest.raises(PriceOutOfRange) as exc:
        pricing.validate_proposal(250.0, floor)
    assert exc.value.bound == "ceiling"
    assert exc.value.limit == 246.8


def test_lock_accepts_floor_itself():
    assert pricing.validate_lock(100.0, 100.0)
    assert pricing.validate_lock(200.0, 100.0)
    with pytest.raises(PriceOutOfRange) as exc:
        pricing.validate_lock(99.99, 100.0)
    assert exc.value.bound == "floor"


def test_adjust_amount_is_clamped():
    floor = 123.4
    assert pricing.adjust_amount(floor, floor, +1) == 133.4
    assert pricing.adjust_amount(240.0, floor, +1) == 246.8
    assert pricing.adjust_amount(130.0, floor, -1) == floor
    assert pricing.adjust_amount(150.0, floor, 0) == 150.0


@pytest.mark.parametrize("amount", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_amounts_rejected(amount):
    with pytest.raises(PriceOutOfRange) as exc:
        pricing.validate_lock(amount, 100.0)
    assert exc.value.bound == "finite"
    with pytest.raises(PriceOutOfRange) as exc:
        pricing.validate_proposal(amount, 100.0)
    assert exc.value.bound == "finite"
