"""
HTTP API ядра маркетплейса: команды и чтение состояния лотов.
Запуск: python main.py (или uvicorn "api:create_app" --factory)

Действующий участник передаётся заголовком X-Actor-Id (выдаёт сервис профилей).
"""
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from database.core import session_maker as default_session_maker
from database.models import TradableUnit, utcnow
from middlewares.logging_middleware import LoggingMiddleware
from services import schemas
from services.actors import ActorDirectory, upsert_actor
from services.bid_ledger import BidLedger
from services.delivery_negotiation import DeliveryNegotiation
from services.errors import ActorUnauthorized, DomainError, TransientConflict
from services.fulfillment import FulfillmentStateMachine
from services.ratings import RatingService
from services.transactions import UnitTransactions, load_unit
from services.work_queue import get_work_queue

logger = logging.getLogger(__name__)


class Services:
    """Сборка сервисов поверх одной фабрики сессий и одного нотификатора."""

    def __init__(
        self,
        session_factory=None,
        notifier=None,
        cache=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory or default_session_maker
        self.clock = clock
        self.directory = ActorDirectory(cache)
        self.tx = UnitTransactions(self.session_factory, notifier=notifier, clock=clock)
        self.ledger = BidLedger(self.tx, self.directory)
        self.negotiation = DeliveryNegotiation(self.tx, self.directory)
        self.fulfillment = FulfillmentStateMachine(self.tx, self.directory)
        self.ratings = RatingService(self.tx)


# --- Dependencies ---

def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)):
    """Dependency для получения сессии БД"""
    async with services.session_factory() as session:
        yield session


def viewer_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_actor_id


def actor_id(x_actor_id: Optional[str] = Header(default=None)) -> str:
    if not x_actor_id:
        raise ActorUnauthorized("Не указан участник (заголовок X-Actor-Id)")
    return x_actor_id


async def unit_view(services: Services, unit_id: int) -> schemas.UnitOut:
    """Свежее состояние лота после команды."""
    async with services.session_factory() as session:
        unit = await load_unit(session, unit_id)
        return schemas.UnitOut.from_unit(unit, services.clock())


# --- Error handlers ---

async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(
        "Rejected trace=%s %s %s: %s %s",
        getattr(request.state, "trace_id", None), request.method, request.url.path, exc.code, exc.context,
    )
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))


async def transient_conflict_handler(request: Request, exc: TransientConflict) -> JSONResponse:
    logger.warning(
        "Conflict trace=%s %s %s: %s (last error: %r)",
        getattr(request.state, "trace_id", None), request.method, request.url.path, exc, exc.last_error,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 без эха входных значений: NaN и inf не сериализуются в JSON."""
    errors = [{k: v for k, v in e.items() if k not in ("input", "ctx")} for e in exc.errors()]
    logger.info(
        "Invalid request trace=%s %s %s: %s",
        getattr(request.state, "trace_id", None), request.method, request.url.path, errors,
    )
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "UNHANDLED trace=%s %s %s err=%s",
        getattr(request.state, "trace_id", None), request.method, request.url.path, repr(exc),
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return JSONResponse(
        status_code=500,
        content={"error": "InternalError", "message": "Внутренняя ошибка, мы уже записали её в лог", "context": {}},
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Farm Market Core")
    app.state.services = services or Services()

    app.add_middleware(LoggingMiddleware, log_success=True)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(TransientConflict, transient_conflict_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    # --- Service ---

    @app.get("/health")
    async def health(session: AsyncSession = Depends(get_db)):
        await session.execute(text("SELECT 1"))
        return {"status": "ok"}

    @app.put("/actors/{target_id}", response_model=schemas.ActorOut)
    async def put_actor(
        target_id: str,
        body: schemas.ActorIn,
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        """Синхронизация участника из сервиса профилей."""
        actor = await upsert_actor(
            session,
            target_id,
            role=body.role,
            full_name=body.full_name,
            latitude=body.latitude,
            longitude=body.longitude,
            telegram_chat_id=body.telegram_chat_id,
            is_active=body.is_active,
        )
        await services.directory.invalidate(target_id)
        return actor

    # --- Units: queries ---

    @app.get("/units/{unit_id}", response_model=schemas.UnitOut)
    async def get_unit(
        unit_id: int,
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        unit = await load_unit(session, unit_id)
        return schemas.UnitOut.from_unit(unit, services.clock())

    @app.get("/units/{unit_id}/bids", response_model=List[schemas.BidOut])
    async def get_bids(
        unit_id: int,
        viewer: Optional[str] = Depends(viewer_id),
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        ranked = await services.ledger.highest_bids(session, unit_id)
        # лот уже загружен в эту сессию
        unit = await session.get(TradableUnit, unit_id)
        return schemas.redact_bids(ranked, unit.producer_id, viewer)

    @app.get("/units/{unit_id}/delivery", response_model=schemas.DeliveryOut)
    async def get_delivery(
        unit_id: int,
        viewer: Optional[str] = Depends(viewer_id),
        session: AsyncSession = Depends(get_db),
    ):
        unit = await load_unit(session, unit_id)
        return schemas.DeliveryOut.from_unit(unit, viewer)

    @app.get("/units/{unit_id}/delivery/preview", response_model=schemas.QuoteOut)
    async def preview_delivery(
        unit_id: int,
        steps: int = Query(0, ge=-100, le=100, description="Сдвиг суммы на шаги DELIVERY_ADJUST_STEP"),
        courier: str = Depends(actor_id),
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        quote = await services.negotiation.preview(session, unit_id, courier, services.clock(), steps=steps)
        return schemas.QuoteOut(**asdict(quote))

    # --- Units: creation ---

    @app.post("/units/listings", response_model=schemas.UnitOut, status_code=201)
    async def create_listing(
        body: schemas.ListingIn,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        unit = await services.fulfillment.create_listing(
            producer,
            body.description,
            body.quantity,
            body.base_price,
            bidding_start_at=body.bidding_start_at,
            bidding_end_at=body.bidding_end_at,
        )
        return await unit_view(services, unit.id)

    @app.post("/units/orders", response_model=schemas.UnitOut, status_code=201)
    async def place_order(
        body: schemas.OrderIn,
        buyer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        unit = await services.fulfillment.place_order(
            buyer, body.producer_id, body.description, body.quantity, body.price
        )
        return await unit_view(services, unit.id)

    @app.patch("/units/{unit_id}", response_model=schemas.UnitOut)
    async def edit_listing(
        unit_id: int,
        body: schemas.ListingEditIn,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.edit_listing(
            unit_id, producer, description=body.description, quantity=body.quantity, base_price=body.base_price
        )
        return await unit_view(services, unit_id)

    @app.put("/units/{unit_id}/bidding-end", response_model=schemas.UnitOut)
    async def set_bidding_end(
        unit_id: int,
        body: schemas.BiddingEndIn,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.set_bidding_end(unit_id, producer, body.end_at)
        return await unit_view(services, unit_id)

    # --- Bids ---

    @app.post("/units/{unit_id}/bids", response_model=schemas.BidOut, status_code=201)
    async def place_bid(
        unit_id: int,
        body: schemas.AmountIn,
        bidder: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        bid = await services.ledger.place_bid(unit_id, bidder, body.amount)
        return schemas.BidOut.redacted(bid, bidder, owner_id=None)

    @app.delete("/units/{unit_id}/bids/mine", response_model=schemas.BidOut)
    async def withdraw_bid(
        unit_id: int,
        bidder: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        bid = await services.ledger.withdraw_bid(unit_id, bidder)
        return schemas.BidOut.redacted(bid, bidder, owner_id=None)

    @app.post("/units/{unit_id}/bids/{bid_id}/accept", response_model=schemas.UnitOut)
    async def accept_bid(
        unit_id: int,
        bid_id: int,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.ledger.accept_bid(unit_id, bid_id, producer)
        return await unit_view(services, unit_id)

    @app.post("/units/{unit_id}/bids/{bid_id}/decline", response_model=schemas.BidOut)
    async def decline_bid(
        unit_id: int,
        bid_id: int,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        bid = await services.ledger.decline_bid(unit_id, bid_id, producer)
        return schemas.BidOut.redacted(bid, producer, owner_id=producer)

    @app.post("/units/{unit_id}/confirm", response_model=schemas.UnitOut)
    async def confirm_order(
        unit_id: int,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.confirm_order(unit_id, producer)
        return await unit_view(services, unit_id)

    # --- Delivery negotiation ---

    @app.post("/units/{unit_id}/delivery/lock", response_model=schemas.DeliveryOut)
    async def lock_delivery(
        unit_id: int,
        body: schemas.AmountIn,
        courier: str = Depends(actor_id),
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        await services.negotiation.lock(unit_id, courier, body.amount)
        return schemas.DeliveryOut.from_unit(await load_unit(session, unit_id), courier)

    @app.post("/units/{unit_id}/delivery/proposals", response_model=schemas.ProposalOut, status_code=201)
    async def propose_delivery(
        unit_id: int,
        body: schemas.AmountIn,
        courier: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        proposal = await services.negotiation.propose(unit_id, courier, body.amount)
        return schemas.ProposalOut.from_proposal(proposal)

    @app.delete("/units/{unit_id}/delivery/proposals/mine", response_model=schemas.ProposalOut)
    async def withdraw_proposal(
        unit_id: int,
        courier: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        proposal = await services.negotiation.withdraw_proposal(unit_id, courier)
        return schemas.ProposalOut.from_proposal(proposal)

    @app.post("/units/{unit_id}/delivery/proposals/{courier_id}/accept", response_model=schemas.DeliveryOut)
    async def accept_proposal(
        unit_id: int,
        courier_id: str,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        await services.negotiation.accept_proposal(unit_id, courier_id, producer)
        return schemas.DeliveryOut.from_unit(await load_unit(session, unit_id), producer)

    # --- Fulfillment ---

    @app.post("/units/{unit_id}/preparation", response_model=schemas.UnitOut)
    async def start_preparation(
        unit_id: int,
        body: schemas.PreparationIn,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.start_preparation(unit_id, producer, body.minutes)
        return await unit_view(services, unit_id)

    @app.post("/units/{unit_id}/ready", response_model=schemas.UnitOut)
    async def mark_ready(
        unit_id: int,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.mark_ready(unit_id, producer)
        return await unit_view(services, unit_id)

    @app.post("/units/{unit_id}/tracking", response_model=schemas.UnitOut)
    async def advance_tracking(
        unit_id: int,
        body: schemas.TrackingIn,
        courier: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.advance_tracking(unit_id, courier, body.step)
        return await unit_view(services, unit_id)

    @app.post("/units/{unit_id}/cancel", response_model=schemas.UnitOut)
    async def cancel_unit(
        unit_id: int,
        body: schemas.CancelIn,
        producer: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        await services.fulfillment.cancel_unit(unit_id, producer, body.reason)
        return await unit_view(services, unit_id)

    @app.post("/units/{unit_id}/ratings", response_model=schemas.RatingOut, status_code=201)
    async def rate(
        unit_id: int,
        body: schemas.RatingIn,
        rater: str = Depends(actor_id),
        services: Services = Depends(get_services),
    ):
        return await services.ratings.rate(unit_id, rater, body.subject_id, body.score, body.comment)

    # --- Couriers ---

    @app.get("/couriers/{courier_id}/queue", response_model=List[schemas.QueueItemOut])
    async def courier_queue(
        courier_id: str,
        services: Services = Depends(get_services),
        session: AsyncSession = Depends(get_db),
    ):
        items = await get_work_queue(session, courier_id, services.clock())
        return [
            schemas.QueueItemOut(
                unit_id=i.unit_id,
                status=i.status.value,
                next_step=i.next_step.flag,
                distance_km=i.distance_km,
                amount=i.amount,
                estimated_delivery_at=i.estimated_delivery_at,
                score=round(i.score, 2),
            )
            for i in items
        ]

    @app.get("/couriers/{courier_id}/stats", response_model=schemas.CourierStatsOut)
    async def courier_stats(courier_id: str, session: AsyncSession = Depends(get_db)):
        stats = await RatingService.courier_stats(session, courier_id)
        return schemas.CourierStatsOut(**asdict(stats))

    return app
