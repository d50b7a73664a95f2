import asyncio

import pytest
from sqlalchemy import func, select

from database.models import (
    DeliveryAssignment, DeliveryProposal, NegotiationMode, ProposalStatus, TrackingStep,
)
from services.errors import (
    ActorUnauthorized, AlreadyAssigned, AlreadyLocked, NegotiationModeConflict,
    PriceOutOfRange, ProposalNotAllowed, ProposalNotFound,
)
from services.events import EventKind
from services.geo import Coordinate, distance_km
from services.pricing import delivery_floor
from tests.conftest import (
    BUYER_A, BUYER_A_COORD, COURIERS, FARMER, FARMER_COORD,
)


async def assignments_count(services, unit_id):
    async with services.session_factory() as session:
        return await session.scalar(
            select(func.count(DeliveryAssignment.id)).where(DeliveryAssignment.unit_id == unit_id)
        )


async def test_preview_uses_default_distance_without_coordinates(services, accepted_order):
    async with services.session_factory() as session:
        quote = await services.negotiation.preview(session, accepted_order.id, COURIERS[0], services.clock())
    assert quote.distance_km == 10.0
    assert quote.floor == 100.0
    assert quote.ceiling == 200.0
    assert quote.amount == 100.0
    assert quote.step == 10.0
    assert not quote.locked


async def test_preview_uses_party_coordinates(services, listing):
    bid = await services.ledger.place_bid(listing.id, BUYER_A, 500)
    await services.ledger.accept_bid(listing.id, bid.id, FARMER)

    expected = distance_km(Coordinate(*FARMER_COORD), Coordinate(*BUYER_A_COORD))
    async with services.session_factory() as session:
        quote = await services.negotiation.preview(session, listing.id, COURIERS[0], services.clock())
    assert quote.distance_km == expected
    assert quote.floor == delivery_floor(expected)


async def test_concurrent_locks_single_assignment(services, accepted_order):
    results = await asyncio.gather(
        services.negotiation.lock(accepted_order.id, COURIERS[0], 150),
        services.negotiation.lock(accepted_order.id, COURIERS[1], 160),
        return_exceptions=True,
    )
    assigned = [r for r in results if isinstance(r, DeliveryAssignment)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(assigned) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], AlreadyLocked)
    assert await assignments_count(services, accepted_order.id) == 1

    winner = assigned[0]
    assert winner.mode == NegotiationMode.LOCK
    assert winner.completed_steps == 0
    assert not any(winner.flags.values())


async def test_lock_outside_range_rejected(services, accepted_order):
    with pytest.raises(PriceOutOfRange) as exc:
        await services.negotiation.lock(accepted_order.id, COURIERS[0], 90)
    assert exc.value.bound == "floor"
    with pytest.raises(PriceOutOfRange):
        await services.negotiation.lock(accepted_order.id, COURIERS[0], 210)
    assert await assignments_count(services, accepted_order.id) == 0


async def test_only_couriers_negotiate(services, accepted_order):
    with pytest.raises(ActorUnauthorized):
        await services.negotiation.lock(accepted_order.id, BUYER_A, 120)


async def test_negotiation_closed_before_acceptance(services, listing):
    with pytest.raises(ProposalNotAllowed):
        await services.negotiation.propose(listing.id, COURIERS[0], 150)
    with pytest.raises(ProposalNotAllowed):
        await services.negotiation.lock(listing.id, COURIERS[0], 150)


async def test_modes_are_mutually_exclusive(services, accepted_order):
    await services.negotiation.propose(accepted_order.id, COURIERS[0], 150)
    with pytest.raises(NegotiationModeConflict):
        await services.negotiation.lock(accepted_order.id, COURIERS[1], 150)


async def test_reproposal_replaces_amount(services, accepted_order):
    await services.negotiation.propose(accepted_order.id, COURIERS[0], 150)
    updated = await services.negotiation.propose(accepted_order.id, COURIERS[0], 170)
    assert updated.amount == 170

    async with services.session_factory() as session:
        rows = (await session.execute(
            select(DeliveryProposal).where(DeliveryProposal.unit_id == accepted_order.id)
        )).scalars().all()
    assert [(p.courier_id, p.amount, p.status) for p in rows] == [
        (COURIERS[0], 170, ProposalStatus.PENDING)
    ]


async def test_proposal_must_be_above_floor(services, accepted_order):
    with pytest.raises(PriceOutOfRange) as exc:
        await services.negotiation.propose(accepted_order.id, COURIERS[0], 100)
    assert exc.value.bound == "floor_exclusive"


async def test_accept_proposal_rejects_others(services, accepted_order, notifier):
    for courier_id, amount in zip(COURIERS, (150, 140, 190)):
        await services.negotiation.propose(accepted_order.id, courier_id, amount)

    assignment = await services.negotiation.accept_proposal(accepted_order.id, COURIERS[1], FARMER)
    assert assignment.courier_id == COURIERS[1]
    assert assignment.amount == 140
    assert assignment.mode == NegotiationMode.PROPOSAL
    assert assignment.next_step == TrackingStep.ON_MY_WAY_TO_FARMER

    async with services.session_factory() as session:
        rows = (await session.execute(
            select(DeliveryProposal.courier_id, DeliveryProposal.status)
            .where(DeliveryProposal.unit_id == accepted_order.id)
        )).all()
    assert dict(rows) == {
        COURIERS[0]: ProposalStatus.REJECTED,
        COURIERS[1]: ProposalStatus.ACCEPTED,
        COURIERS[2]: ProposalStatus.REJECTED,
    }

    assigned = [e for e in notifier.events if e.kind == EventKind.DELIVERY_ASSIGNED]
    assert len(assigned) == 1
    assert COURIERS[1] in assigned[0].recipients

    with pytest.raises(AlreadyAssigned):
        await services.negotiation.accept_proposal(accepted_order.id, COURIERS[0], FARMER)
    with pytest.raises(AlreadyAssigned):
        await services.negotiation.propose(accepted_order.id, COURIERS[2], 150)


async def test_concurrent_accept_proposal_single_assignment(services, accepted_order):
    for courier_id in COURIERS:
        await services.negotiation.propose(accepted_order.id, courier_id, 150)

    results = await asyncio.gather(
        *(services.negotiation.accept_proposal(accepted_order.id, c, FARMER) for c in COURIERS),
        return_exceptions=True,
    )
    assert sum(isinstance(r, DeliveryAssignment) for r in results) == 1
    assert all(isinstance(r, AlreadyAssigned) for r in results if isinstance(r, Exception))
    assert await assignments_count(services, accepted_order.id) == 1


async def test_accept_missing_proposal(services, accepted_order):
    with pytest.raises(ProposalNotFound):
        await services.negotiation.accept_proposal(accepted_order.id, COURIERS[0], FARMER)


async def test_accept_proposal_only_by_owner(services, accepted_order):
    await services.negotiation.propose(accepted_order.id, COURIERS[0], 150)
    with pytest.raises(ActorUnauthorized):
        await services.negotiation.accept_proposal(accepted_order.id, COURIERS[0], COURIERS[1])


async def test_withdraw_proposal_keeps_others(services, accepted_order):
    await services.negotiation.propose(accepted_order.id, COURIERS[0], 150)
    await services.negotiation.propose(accepted_order.id, COURIERS[1], 160)

    withdrawn = await services.negotiation.withdraw_proposal(accepted_order.id, COURIERS[0])
    assert withdrawn.status == ProposalStatus.WITHDRAWN
    with pytest.raises(ProposalNotFound):
        await services.negotiation.withdraw_proposal(accepted_order.id, COURIERS[0])
    with pytest.raises(ProposalNotFound):
        await services.negotiation.accept_proposal(accepted_order.id, COURIERS[0], FARMER)

    assignment = await services.negotiation.accept_proposal(accepted_order.id, COURIERS[1], FARMER)
    assert assignment.amount == 160


async def test_second_lock_after_commit_rejected(services, assigned_order):
    with pytest.raises(AlreadyLocked):
        await services.negotiation.lock(assigned_order.id, COURIERS[1], 130)


async def test_estimated_delivery_from_distance(services, assigned_order, clock):
    async with services.session_factory() as session:
        unit = await services.fulfillment.get_unit(session, assigned_order.id)
    # 30 минут на забор + 10 км при 20 км/ч
    assert (unit.assignment.estimated_delivery_at - clock()).total_seconds() == 60 * 60


@pytest.mark.parametrize("amount", [float("nan"), float("inf")])
async def test_non_finite_delivery_amounts_rejected(services, accepted_order, amount):
    with pytest.raises(PriceOutOfRange) as exc:
        await services.negotiation.lock(accepted_order.id, COURIERS[0], amount)
    assert exc.value.bound == "finite"
    with pytest.raises(PriceOutOfRange) as exc:
        await services.negotiation.propose(accepted_order.id, COURIERS[1], amount)
    assert exc.value.bound == "finite"
    assert await assignments_count(services, accepted_order.id) == 0


async def test_preview_adjusts_by_steps(services, accepted_order):
    async with services.session_factory() as session:
        up = await services.negotiation.preview(session, accepted_order.id, COURIERS[0], services.clock(), steps=3)
        capped = await services.negotiation.preview(session, accepted_order.id, COURIERS[0], services.clock(), steps=50)
        down = await services.negotiation.preview(session, accepted_order.id, COURIERS[0], services.clock(), steps=-2)
    assert up.amount == 130.0
    assert capped.amount == 200.0
    assert down.amount == 100.0


async def test_preview_does_not_adjust_locked_amount(services, assigned_order):
    async with services.session_factory() as session:
        quote = await services.negotiation.preview(session, assigned_order.id, COURIERS[0], services.clock(), steps=2)
    assert quote.locked
    assert quote.amount == 120
