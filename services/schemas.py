"""
Схемы запросов и ответов HTTP API (валидация входа через Pydantic).
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from database.models import (
    ActorRole, Bid, DeliveryAssignment, DeliveryProposal, TrackingStep, TradableUnit,
)
from services.bid_ledger import rank_bids
from services.lifecycle import effective_status, prep_due_at

YOUR_BID = "your bid"
ANONYMOUS = "anonymous"


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Время без зоны считаем UTC."""
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# --- Запросы ---

class ActorIn(BaseModel):
    """Проекция участника из сервиса профилей."""

    role: ActorRole
    full_name: str = Field(default="", max_length=200)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90, allow_inf_nan=False)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180, allow_inf_nan=False)
    telegram_chat_id: Optional[int] = None
    is_active: bool = True


class ListingIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=2000)
    quantity: float = Field(..., gt=0, allow_inf_nan=False)
    base_price: float = Field(..., gt=0, allow_inf_nan=False)
    bidding_start_at: Optional[datetime] = None
    bidding_end_at: Optional[datetime] = None

    @field_validator("bidding_start_at", "bidding_end_at")
    @classmethod
    def validate_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class OrderIn(BaseModel):
    producer_id: str = Field(..., min_length=1, max_length=64)
    description: str = Field(..., min_length=1, max_length=2000)
    quantity: float = Field(..., gt=0, allow_inf_nan=False)
    price: float = Field(..., gt=0, allow_inf_nan=False)


class ListingEditIn(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    quantity: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    base_price: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)


class BiddingEndIn(BaseModel):
    end_at: datetime

    @field_validator("end_at")
    @classmethod
    def validate_end_at(cls, v: datetime) -> datetime:
        return _as_utc(v)


class AmountIn(BaseModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False)


class PreparationIn(BaseModel):
    minutes: int = Field(..., gt=0, le=24 * 60)


class TrackingIn(BaseModel):
    step: TrackingStep

    @field_validator("step", mode="before")
    @classmethod
    def validate_step(cls, v):
        """Шаг можно передать именем флага (picked_up_order) или номером 1..6."""
        if isinstance(v, str) and v.isdigit():
            return int(v)
        if isinstance(v, str):
            try:
                return TrackingStep.from_flag(v)
            except KeyError:
                allowed = ", ".join(s.flag for s in TrackingStep)
                raise ValueError(f"Неизвестный шаг: {v}. Допустимые: {allowed}")
        return v


class CancelIn(BaseModel):
    reason: str = Field(default="", max_length=500)


class RatingIn(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=64)
    score: int
    comment: str = Field(default="", max_length=1000)


# --- Ответы ---

class ActorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: ActorRole
    full_name: str
    latitude: Optional[float]
    longitude: Optional[float]
    is_active: bool


class BidOut(BaseModel):
    id: int
    amount: float
    placed_at: datetime
    status: str
    bidder: str

    @classmethod
    def redacted(cls, bid: Bid, viewer_id: Optional[str], owner_id: Optional[str]) -> "BidOut":
        """Владелец лота видит id покупателей; остальные — только «your bid» у своей ставки."""
        if viewer_id == owner_id:
            bidder = bid.bidder_id
        elif viewer_id is not None and bid.bidder_id == viewer_id:
            bidder = YOUR_BID
        else:
            bidder = ANONYMOUS
        return cls(id=bid.id, amount=bid.amount, placed_at=bid.placed_at, status=bid.status.value, bidder=bidder)


def redact_bids(ranked: List[Bid], owner_id: str, viewer_id: Optional[str]) -> List[BidOut]:
    return [BidOut.redacted(b, viewer_id, owner_id) for b in ranked]


class AcceptedBidOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: int
    buyer_id: str
    amount: float
    accepted_at: datetime
    auto_accepted: bool


class ProposalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    courier_id: str
    amount: float
    proposed_at: datetime
    status: str

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)

    @classmethod
    def from_proposal(cls, proposal: DeliveryProposal) -> "ProposalOut":
        return cls.model_validate(proposal)


class AssignmentOut(BaseModel):
    courier_id: str
    amount: float
    mode: str
    distance_km: float
    locked_at: datetime
    completed_steps: int
    next_step: Optional[str]
    is_complete: bool
    flags: Dict[str, bool]
    last_step_at: Optional[datetime]
    estimated_delivery_at: Optional[datetime]
    delivered_at: Optional[datetime]

    @classmethod
    def from_assignment(cls, a: DeliveryAssignment) -> "AssignmentOut":
        return cls(
            courier_id=a.courier_id,
            amount=a.amount,
            mode=a.mode.value,
            distance_km=a.distance_km,
            locked_at=a.locked_at,
            completed_steps=a.completed_steps,
            next_step=a.next_step.flag if a.next_step else None,
            is_complete=a.is_complete,
            flags=a.flags,
            last_step_at=a.last_step_at,
            estimated_delivery_at=a.estimated_delivery_at,
            delivered_at=a.delivered_at,
        )


class UnitOut(BaseModel):
    id: int
    kind: str
    producer_id: str
    buyer_id: Optional[str]
    description: str
    quantity: float
    base_price: float
    status: str
    effective_status: str
    order_flow_label: str
    negotiation_mode: Optional[str]
    created_at: datetime
    updated_at: datetime
    bidding_start_at: Optional[datetime]
    bidding_end_at: Optional[datetime]
    accepted_at: Optional[datetime]
    prep_time_minutes: Optional[int]
    prep_started_at: Optional[datetime]
    prep_due_at: Optional[datetime]
    ready_at: Optional[datetime]
    picked_up_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]
    live_bids: int
    highest_bid: Optional[float]
    accepted_bid: Optional[AcceptedBidOut]
    assignment: Optional[AssignmentOut]

    @classmethod
    def from_unit(cls, unit: TradableUnit, now: datetime) -> "UnitOut":
        status, ready_at = effective_status(unit, now)
        ranked = rank_bids(unit.bids)
        return cls(
            id=unit.id,
            kind=unit.kind.value,
            producer_id=unit.producer_id,
            buyer_id=unit.buyer_id,
            description=unit.description,
            quantity=unit.quantity,
            base_price=unit.base_price,
            status=unit.status.value,
            effective_status=status.value,
            order_flow_label=status.order_flow_label,
            negotiation_mode=unit.negotiation_mode.value if unit.negotiation_mode else None,
            created_at=unit.created_at,
            updated_at=unit.updated_at,
            bidding_start_at=unit.bidding_start_at,
            bidding_end_at=unit.bidding_end_at,
            accepted_at=unit.accepted_at,
            prep_time_minutes=unit.prep_time_minutes,
            prep_started_at=unit.prep_started_at,
            prep_due_at=prep_due_at(unit),
            ready_at=ready_at,
            picked_up_at=unit.picked_up_at,
            delivered_at=unit.delivered_at,
            cancelled_at=unit.cancelled_at,
            cancel_reason=unit.cancel_reason,
            live_bids=len(ranked),
            highest_bid=ranked[0].amount if ranked else None,
            accepted_bid=AcceptedBidOut.model_validate(unit.accepted_bid) if unit.accepted_bid else None,
            assignment=AssignmentOut.from_assignment(unit.assignment) if unit.assignment else None,
        )


class DeliveryOut(BaseModel):
    unit_id: int
    negotiation_mode: Optional[str]
    proposals: List[ProposalOut]
    assignment: Optional[AssignmentOut]

    @classmethod
    def from_unit(cls, unit: TradableUnit, viewer_id: Optional[str]) -> "DeliveryOut":
        """Фермер видит все предложения, курьер — только свои."""
        proposals = unit.proposals
        if viewer_id != unit.producer_id:
            proposals = [p for p in proposals if p.courier_id == viewer_id]
        return cls(
            unit_id=unit.id,
            negotiation_mode=unit.negotiation_mode.value if unit.negotiation_mode else None,
            proposals=[ProposalOut.from_proposal(p) for p in proposals],
            assignment=AssignmentOut.from_assignment(unit.assignment) if unit.assignment else None,
        )


class QuoteOut(BaseModel):
    unit_id: int
    distance_km: float
    floor: float
    ceiling: float
    step: float
    amount: float
    locked: bool


class QueueItemOut(BaseModel):
    unit_id: int
    status: str
    next_step: str
    distance_km: float
    amount: float
    estimated_delivery_at: Optional[datetime]
    score: float


class CourierStatsOut(BaseModel):
    courier_id: str
    earnings: float
    delivered_count: int
    active_count: int
    on_time_rate: Optional[float]
    average_rating: Optional[float]
    ratings_count: int


class RatingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    unit_id: int
    rater_id: str
    subject_id: str
    subject_role: ActorRole
    score: int
    comment: str
    rated_at: datetime
