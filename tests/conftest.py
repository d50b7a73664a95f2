import os

os.environ.setdefault("DB_DIALECT", "sqlite")
os.environ.setdefault("BOT_TOKEN", "")

from datetime import datetime, timedelta, timezone

import pytest

from api import Services
from database.core import Base, build_engine, build_session_maker
from database.models import ActorRole, UnitStatus
from services.actors import upsert_actor
from services.cache import MemoryActorCache

T0 = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)

FARMER = "farmer-1"
BUYER_A = "buyer-a"
BUYER_B = "buyer-b"
BUYER_NO_GEO = "buyer-nogeo"
COURIERS = ("courier-1", "courier-2", "courier-3")

FARMER_COORD = (41.3111, 69.2797)
BUYER_A_COORD = (41.2995, 69.2401)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def notify(self, event) -> None:
        self.events.append(event)

    def statuses(self, unit_id):
        return [
            e.payload["new_status"] for e in self.events
            if e.unit_id == unit_id and e.kind.value == "status_changed"
        ]


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{(tmp_path / 'test.sqlite3').as_posix()}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_maker(engine)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def actors(session_factory):
    async with session_factory() as session:
        await upsert_actor(session, FARMER, ActorRole.PRODUCER, "Farmer", *FARMER_COORD)
        await upsert_actor(session, BUYER_A, ActorRole.CONSUMER, "Buyer A", *BUYER_A_COORD)
        await upsert_actor(session, BUYER_B, ActorRole.CONSUMER, "Buyer B", 41.33, 69.30)
        await upsert_actor(session, BUYER_NO_GEO, ActorRole.CONSUMER, "Buyer without location")
        for courier_id in COURIERS:
            await upsert_actor(session, courier_id, ActorRole.COURIER, courier_id, 41.30, 69.25)
    return True


@pytest.fixture
def services(session_factory, notifier, clock, actors):
    return Services(session_factory, notifier=notifier, cache=MemoryActorCache(), clock=clock)


@pytest.fixture
async def listing(services):
    """Лот фермера с базовой ценой 400."""
    return await services.fulfillment.create_listing(FARMER, "Tomatoes, 20 kg", 20, 400)


@pytest.fixture
async def accepted_order(services):
    """Подтверждённый заказ покупателя без координат: расстояние по умолчанию 10 км, минимум доставки 100."""
    unit = await services.fulfillment.place_order(BUYER_NO_GEO, FARMER, "Potatoes, 50 kg", 50, 900)
    unit = await services.fulfillment.confirm_order(unit.id, FARMER)
    assert unit.status == UnitStatus.ACCEPTED
    return unit


@pytest.fixture
async def assigned_order(services, accepted_order):
    """Заказ с зафиксированной курьером доставкой."""
    await services.negotiation.lock(accepted_order.id, COURIERS[0], 120)
    return accepted_order
