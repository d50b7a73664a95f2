import pytest

from database.models import ActorRole, TrackingStep
from services.errors import RatingNotAllowed
from services.ratings import RatingService
from tests.conftest import BUYER_B, BUYER_NO_GEO, COURIERS, FARMER


async def deliver(services, clock, courier_id=COURIERS[0], amount=120, late_by=None):
    order = await services.fulfillment.place_order(BUYER_NO_GEO, FARMER, "Carrots", 10, 90)
    await services.fulfillment.confirm_order(order.id, FARMER)
    await services.negotiation.lock(order.id, courier_id, amount)
    await services.fulfillment.start_preparation(order.id, FARMER, 10)
    clock.advance(minutes=10)
    for step in TrackingStep:
        if step == TrackingStep.DELIVERED_ORDER and late_by is not None:
            clock.advance(**late_by)
        await services.fulfillment.advance_tracking(order.id, courier_id, step)
    return order


async def stats(services, courier_id):
    async with services.session_factory() as session:
        return await RatingService.courier_stats(session, courier_id)


async def test_rating_requires_delivery(services, assigned_order):
    with pytest.raises(RatingNotAllowed):
        await services.ratings.rate(assigned_order.id, BUYER_NO_GEO, COURIERS[0], 5)


async def test_buyer_rates_producer_and_courier(services, clock):
    order = await deliver(services, clock)
    for_producer = await services.ratings.rate(order.id, BUYER_NO_GEO, FARMER, 4, "fresh")
    for_courier = await services.ratings.rate(order.id, BUYER_NO_GEO, COURIERS[0], 5)
    assert for_producer.subject_role == ActorRole.PRODUCER
    assert for_courier.subject_role == ActorRole.COURIER

    with pytest.raises(RatingNotAllowed):
        await services.ratings.rate(order.id, BUYER_NO_GEO, COURIERS[0], 3)


async def test_rating_participants_checked(services, clock):
    order = await deliver(services, clock)
    with pytest.raises(RatingNotAllowed):
        await services.ratings.rate(order.id, BUYER_B, COURIERS[0], 5)
    with pytest.raises(RatingNotAllowed):
        await services.ratings.rate(order.id, COURIERS[0], FARMER, 5)
    with pytest.raises(RatingNotAllowed):
        await services.ratings.rate(order.id, FARMER, BUYER_NO_GEO, 5)
    await services.ratings.rate(order.id, FARMER, COURIERS[0], 5)


@pytest.mark.parametrize("score", [0, 6])
async def test_rating_score_range(services, clock, score):
    order = await deliver(services, clock)
    with pytest.raises(RatingNotAllowed):
        await services.ratings.rate(order.id, BUYER_NO_GEO, COURIERS[0], score)


async def test_rating_does_not_bump_unit_version(services, clock):
    order = await deliver(services, clock)
    async with services.session_factory() as session:
        before = (await services.fulfillment.get_unit(session, order.id)).version
    await services.ratings.rate(order.id, BUYER_NO_GEO, FARMER, 5)
    async with services.session_factory() as session:
        after = (await services.fulfillment.get_unit(session, order.id)).version
    assert after == before


async def test_courier_stats(services, clock, assigned_order):
    on_time = await deliver(services, clock, amount=110)
    late = await deliver(services, clock, amount=130, late_by={"hours": 3})
    await services.ratings.rate(on_time.id, BUYER_NO_GEO, COURIERS[0], 5)
    await services.ratings.rate(late.id, BUYER_NO_GEO, COURIERS[0], 2)
    await services.ratings.rate(late.id, FARMER, COURIERS[0], 3)

    result = await stats(services, COURIERS[0])
    assert result.earnings == 240
    assert result.delivered_count == 2
    assert result.active_count == 1
    assert result.on_time_rate == 0.5
    assert result.ratings_count == 3
    assert result.average_rating == pytest.approx(3.33)


async def test_courier_stats_empty(services):
    result = await stats(services, COURIERS[2])
    assert result.earnings == 0
    assert result.delivered_count == 0
    assert result.on_time_rate is None
    assert result.average_rating is None
    assert result.ratings_count == 0


async def test_cancelled_assignment_not_active(services, assigned_order):
    await services.fulfillment.cancel_unit(assigned_order.id, FARMER)
    assert (await stats(services, COURIERS[0])).active_count == 0
