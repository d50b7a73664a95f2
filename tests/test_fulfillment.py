from datetime import timedelta

import pytest

from api import Services
from database.models import (
    BidStatus, ProposalStatus, TrackingStep, UnitKind, UnitStatus,
)
from services.cache import MemoryActorCache
from services.errors import (
    ActorUnauthorized, InvalidArgument, InvalidBiddingWindow, InvalidTransition,
    StepNotEnabled, UnitNotBiddable,
)
from services.lifecycle import can_transition, effective_status
from services.scheduler import sweep_once
from tests.conftest import BUYER_A, BUYER_B, COURIERS, FARMER, T0


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    async def notify(self, event) -> None:
        self.calls += 1
        raise RuntimeError("telegram is down")


async def load(services, unit_id):
    async with services.session_factory() as session:
        return await services.fulfillment.get_unit(session, unit_id)


async def sweep(services, **kwargs):
    return await sweep_once(
        services.session_factory, services.fulfillment, services.ledger,
        now=services.clock(), **kwargs,
    )


async def walk_to(services, unit_id, last_step, courier_id=COURIERS[0]):
    for step in TrackingStep:
        if step > last_step:
            break
        await services.fulfillment.advance_tracking(unit_id, courier_id, step)


# --- Подготовка ---

async def test_prep_timer_projects_ready_and_sweep_commits_same(services, accepted_order, clock):
    await services.fulfillment.start_preparation(accepted_order.id, FARMER, 1)
    clock.advance(seconds=60)

    unit = await load(services, accepted_order.id)
    assert unit.status == UnitStatus.PREPARING
    assert effective_status(unit, clock()) == (UnitStatus.READY, T0 + timedelta(minutes=1))

    result = await sweep(services, auto_accept=False)
    assert result.settled == 1

    unit = await load(services, accepted_order.id)
    assert unit.status == UnitStatus.READY
    assert unit.ready_at == T0 + timedelta(minutes=1)


async def test_prep_timer_survives_restart(services, session_factory, accepted_order, clock, notifier):
    await services.fulfillment.start_preparation(accepted_order.id, FARMER, 1)
    clock.advance(minutes=5)

    restarted = Services(session_factory, notifier=notifier, cache=MemoryActorCache(), clock=clock)
    unit = await load(restarted, accepted_order.id)
    assert effective_status(unit, clock())[0] == UnitStatus.READY

    assert (await sweep(restarted, auto_accept=False)).settled == 1
    unit = await load(restarted, accepted_order.id)
    assert unit.status == UnitStatus.READY
    # ready_at равен сроку таймера, не времени проверки
    assert unit.ready_at == T0 + timedelta(minutes=1)


async def test_sweep_is_idempotent(services, accepted_order, clock):
    await services.fulfillment.start_preparation(accepted_order.id, FARMER, 1)
    clock.advance(minutes=2)
    assert (await sweep(services, auto_accept=False)).settled == 1
    assert (await sweep(services, auto_accept=False)).settled == 0


async def test_manual_ready_after_timer_is_noop(services, accepted_order, clock, notifier):
    await services.fulfillment.start_preparation(accepted_order.id, FARMER, 1)
    clock.advance(minutes=2)
    await sweep(services, auto_accept=False)
    before = await load(services, accepted_order.id)

    await services.fulfillment.mark_ready(accepted_order.id, FARMER)

    after = await load(services, accepted_order.id)
    assert after.status == UnitStatus.READY
    assert after.version == before.version
    assert notifier.statuses(accepted_order.id).count("ready") == 1


async def test_manual_ready_before_timer(services, accepted_order, clock):
    await services.fulfillment.start_preparation(accepted_order.id, FARMER, 30)
    clock.advance(minutes=10)
    unit = await services.fulfillment.mark_ready(accepted_order.id, FARMER)
    assert unit.status == UnitStatus.READY
    assert unit.ready_at == T0 + timedelta(minutes=10)


async def test_manual_ready_requires_preparation(services, accepted_order):
    with pytest.raises(InvalidTransition):
        await services.fulfillment.mark_ready(accepted_order.id, FARMER)


async def test_restart_preparation_reanchors_timer(services, accepted_order, clock):
    await services.fulfillment.start_preparation(accepted_order.id, FARMER, 10)
    clock.advance(minutes=5)
    unit = await services.fulfillment.start_preparation(accepted_order.id, FARMER, 10)
    assert unit.prep_started_at == T0 + timedelta(minutes=5)

    clock.advance(minutes=7)
    assert effective_status(await load(services, accepted_order.id), clock())[0] == UnitStatus.PREPARING
    clock.advance(minutes=3)
    assert effective_status(await load(services, accepted_order.id), clock())[0] == UnitStatus.READY


async def test_preparation_time_must_be_positive(services, accepted_order):
    with pytest.raises(InvalidArgument):
        await services.fulfillment.start_preparation(accepted_order.id, FARMER, 0)


async def test_only_owner_prepares(services, accepted_order):
    with pytest.raises(ActorUnauthorized):
        await services.fulfillment.start_preparation(accepted_order.id, BUYER_A, 5)


async def test_listing_cannot_be_prepared_before_acceptance(services, listing):
    with pytest.raises(InvalidTransition):
        await services.fulfillment.start_preparation(listing.id, FARMER, 5)


# --- Трекинг ---

async def test_tracking_out_of_order_rejected(services, assigned_order):
    await services.fulfillment.advance_tracking(assigned_order.id, COURIERS[0], TrackingStep.ON_MY_WAY_TO_FARMER)

    with pytest.raises(StepNotEnabled) as exc:
        await services.fulfillment.advance_tracking(assigned_order.id, COURIERS[0], TrackingStep.REACHED_BUYER)
    assert exc.value.context["expected"] == "reached_farmer"

    with pytest.raises(StepNotEnabled):
        await services.fulfillment.advance_tracking(
            assigned_order.id, COURIERS[0], TrackingStep.ON_MY_WAY_TO_FARMER
        )

    unit = await load(services, assigned_order.id)
    assert unit.assignment.completed_steps == 1
    assert unit.assignment.flags["on_my_way_to_farmer"]
    assert not unit.assignment.flags["reached_farmer"]
    assert not unit.assignment.flags["reached_buyer"]


async def test_pickup_requires_ready(services, assigned_order):
    await walk_to(services, assigned_order.id, TrackingStep.REACHED_FARMER)
    with pytest.raises(StepNotEnabled):
        await services.fulfillment.advance_tracking(assigned_order.id, COURIERS[0], TrackingStep.PICKED_UP_ORDER)

    unit = await load(services, assigned_order.id)
    assert unit.status == UnitStatus.ACCEPTED
    assert unit.assignment.completed_steps == 2


async def test_pickup_settles_expired_timer(services, assigned_order, clock):
    await services.fulfillment.start_preparation(assigned_order.id, FARMER, 15)
    await walk_to(services, assigned_order.id, TrackingStep.REACHED_FARMER)
    clock.advance(minutes=20)

    await services.fulfillment.advance_tracking(assigned_order.id, COURIERS[0], TrackingStep.PICKED_UP_ORDER)
    unit = await load(services, assigned_order.id)
    assert unit.status == UnitStatus.PICKED_UP
    assert unit.ready_at == T0 + timedelta(minutes=15)
    assert unit.picked_up_at == T0 + timedelta(minutes=20)


async def test_full_delivery_walk(services, assigned_order, clock, notifier):
    await services.fulfillment.start_preparation(assigned_order.id, FARMER, 10)
    clock.advance(minutes=10)
    await services.fulfillment.mark_ready(assigned_order.id, FARMER)
    for step in TrackingStep:
        clock.advance(minutes=5)
        await services.fulfillment.advance_tracking(assigned_order.id, COURIERS[0], step)

    unit = await load(services, assigned_order.id)
    assert unit.status == UnitStatus.DELIVERED
    assert unit.assignment.is_complete
    assert all(unit.assignment.flags.values())
    assert unit.assignment.delivered_at == clock()
    assert unit.delivered_at == clock()

    statuses = notifier.statuses(assigned_order.id)
    assert statuses == ["accepted", "preparing", "ready", "picked_up", "delivered"]
    priorities = [UnitStatus(s).priority for s in statuses]
    assert priorities == sorted(set(priorities))

    with pytest.raises(StepNotEnabled):
        await services.fulfillment.advance_tracking(assigned_order.id, COURIERS[0], TrackingStep.DELIVERED_ORDER)


async def test_only_assigned_courier_tracks(services, assigned_order):
    with pytest.raises(ActorUnauthorized):
        await services.fulfillment.advance_tracking(
            assigned_order.id, COURIERS[1], TrackingStep.ON_MY_WAY_TO_FARMER
        )


# --- Отмена ---

async def test_cancel_closes_bids(services, listing):
    await services.ledger.place_bid(listing.id, BUYER_A, 500)
    await services.ledger.place_bid(listing.id, BUYER_B, 550)
    unit = await services.fulfillment.cancel_unit(listing.id, FARMER, "crop failed")
    assert unit.status == UnitStatus.CANCELLED
    assert unit.cancel_reason == "crop failed"
    assert {b.status for b in unit.bids} == {BidStatus.DECLINED}


async def test_cancel_rejects_pending_proposals(services, accepted_order):
    await services.negotiation.propose(accepted_order.id, COURIERS[0], 150)
    unit = await services.fulfillment.cancel_unit(accepted_order.id, FARMER)
    assert [p.status for p in unit.proposals] == [ProposalStatus.REJECTED]


async def test_cancelled_unit_blocks_tracking(services, assigned_order):
    await services.fulfillment.cancel_unit(assigned_order.id, FARMER)
    with pytest.raises(StepNotEnabled):
        await services.fulfillment.advance_tracking(
            assigned_order.id, COURIERS[0], TrackingStep.ON_MY_WAY_TO_FARMER
        )


async def test_cannot_cancel_after_pickup(services, assigned_order, clock):
    await services.fulfillment.start_preparation(assigned_order.id, FARMER, 1)
    clock.advance(minutes=1)
    await walk_to(services, assigned_order.id, TrackingStep.PICKED_UP_ORDER)
    with pytest.raises(InvalidTransition):
        await services.fulfillment.cancel_unit(assigned_order.id, FARMER)


async def test_cannot_cancel_twice(services, listing):
    await services.fulfillment.cancel_unit(listing.id, FARMER)
    with pytest.raises(InvalidTransition):
        await services.fulfillment.cancel_unit(listing.id, FARMER)


# --- Заказы и редактирование лота ---

async def test_place_and_confirm_order(services, notifier):
    order = await services.fulfillment.place_order(BUYER_A, FARMER, "Eggs", 30, 120)
    assert order.kind == UnitKind.ORDER
    assert order.status == UnitStatus.ACTIVE
    assert order.buyer_id == BUYER_A

    confirmed = await services.fulfillment.confirm_order(order.id, FARMER)
    assert confirmed.status == UnitStatus.ACCEPTED
    assert notifier.statuses(order.id) == ["accepted"]


async def test_listing_not_confirmed_directly(services, listing):
    with pytest.raises(InvalidTransition):
        await services.fulfillment.confirm_order(listing.id, FARMER)


async def test_order_requires_positive_values(services):
    with pytest.raises(InvalidArgument):
        await services.fulfillment.place_order(BUYER_A, FARMER, "Eggs", 0, 120)
    with pytest.raises(InvalidArgument):
        await services.fulfillment.create_listing(FARMER, "Eggs", 10, -5)


async def test_edit_listing(services, listing):
    unit = await services.fulfillment.edit_listing(listing.id, FARMER, description="Cherry tomatoes", base_price=450)
    assert unit.description == "Cherry tomatoes"
    assert unit.base_price == 450

    await services.ledger.place_bid(listing.id, BUYER_A, 500)
    with pytest.raises(InvalidArgument):
        await services.fulfillment.edit_listing(listing.id, FARMER, base_price=300)
    unit = await services.fulfillment.edit_listing(listing.id, FARMER, quantity=25)
    assert unit.quantity == 25


async def test_edit_closed_listing_rejected(services, listing):
    bid = await services.ledger.place_bid(listing.id, BUYER_A, 500)
    await services.ledger.accept_bid(listing.id, bid.id, FARMER)
    with pytest.raises(UnitNotBiddable):
        await services.fulfillment.edit_listing(listing.id, FARMER, description="changed")


async def test_bidding_end_must_be_future(services, listing, clock):
    with pytest.raises(InvalidBiddingWindow):
        await services.fulfillment.set_bidding_end(listing.id, FARMER, clock() - timedelta(minutes=1))
    unit = await services.fulfillment.set_bidding_end(listing.id, FARMER, clock() + timedelta(hours=3))
    assert unit.bidding_end_at == T0 + timedelta(hours=3)


async def test_listing_window_validated_on_create(services, clock):
    with pytest.raises(InvalidBiddingWindow):
        await services.fulfillment.create_listing(
            FARMER, "Pears", 5, 100, bidding_end_at=clock() - timedelta(hours=1)
        )


# --- Уведомления и автопринятие ---

async def test_failing_notifier_does_not_roll_back(session_factory, actors, clock, accepted_order):
    failing = FailingNotifier()
    services = Services(session_factory, notifier=failing, cache=MemoryActorCache(), clock=clock)

    unit = await services.fulfillment.start_preparation(accepted_order.id, FARMER, 5)
    assert unit.status == UnitStatus.PREPARING
    assert failing.calls == 1
    assert (await load(services, accepted_order.id)).status == UnitStatus.PREPARING


async def test_sweep_auto_accepts_highest_when_enabled(services, clock):
    unit = await services.fulfillment.create_listing(
        FARMER, "Honey", 3, 100, bidding_end_at=clock() + timedelta(hours=1)
    )
    await services.ledger.place_bid(unit.id, BUYER_A, 150)
    await services.ledger.place_bid(unit.id, BUYER_B, 180)
    clock.advance(hours=2)

    assert (await sweep(services, auto_accept=False)).auto_accepted == 0
    assert (await load(services, unit.id)).status == UnitStatus.ACTIVE

    assert (await sweep(services, auto_accept=True)).auto_accepted == 1
    unit = await load(services, unit.id)
    assert unit.status == UnitStatus.ACCEPTED
    assert unit.buyer_id == BUYER_B
    assert unit.accepted_bid.amount == 180
    assert unit.accepted_bid.auto_accepted

    assert (await sweep(services, auto_accept=True)).auto_accepted == 0


@pytest.mark.parametrize("status", [UnitStatus.DELIVERED, UnitStatus.CANCELLED])
def test_terminal_statuses_have_no_exits(status):
    assert status.is_terminal
    assert not any(can_transition(status, target) for target in UnitStatus)


def test_open_statuses_are_not_terminal():
    assert not any(s.is_terminal for s in UnitStatus if s not in (UnitStatus.DELIVERED, UnitStatus.CANCELLED))
