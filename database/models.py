import enum
from datetime import datetime, timezone
from typing import Optional, List, Dict

from sqlalchemy import (
    BigInteger, Integer, String, Boolean, ForeignKey, DateTime, Float, Text,
    Enum as PgEnum, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from database.core import Base
from config import config


# В SQLite автоинкремент корректно работает только для PRIMARY KEY типа INTEGER (rowid).
# Поэтому в dev/test режиме на SQLite используем Integer для PK, а в Postgres оставляем BigInteger.
PK_INT = Integer if config.IS_SQLITE else BigInteger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime, который всегда возвращает aware-время в UTC (SQLite хранит naive)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# --- Enums ---
class ActorRole(str, enum.Enum):
    PRODUCER = "producer"
    CONSUMER = "consumer"
    COURIER = "courier"
    ADMIN = "admin"


class UnitKind(str, enum.Enum):
    LISTING = "listing"  # лот с торгами
    ORDER = "order"      # заказ по фиксированной цене


class UnitStatus(str, enum.Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def priority(self) -> int:
        return STATUS_PRIORITY[self]

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.DELIVERED, UnitStatus.CANCELLED)

    @property
    def order_flow_label(self) -> str:
        return ORDER_FLOW_LABELS[self]


# Порядковый номер статуса: статус лота никогда не уменьшается
STATUS_PRIORITY: Dict[UnitStatus, int] = {
    UnitStatus.ACTIVE: 0,
    UnitStatus.ACCEPTED: 1,
    UnitStatus.PREPARING: 2,
    UnitStatus.READY: 3,
    UnitStatus.PICKED_UP: 4,
    UnitStatus.DELIVERED: 5,
    UnitStatus.CANCELLED: 6,
}

# Названия тех же статусов в потоке заказов
ORDER_FLOW_LABELS: Dict[UnitStatus, str] = {
    UnitStatus.ACTIVE: "New",
    UnitStatus.ACCEPTED: "Accepted",
    UnitStatus.PREPARING: "Preparing",
    UnitStatus.READY: "Ready",
    UnitStatus.PICKED_UP: "Picked Up",
    UnitStatus.DELIVERED: "Delivered",
    UnitStatus.CANCELLED: "Cancelled",
}


class BidStatus(str, enum.Enum):
    LIVE = "live"
    SUPERSEDED = "superseded"
    WITHDRAWN = "withdrawn"
    DECLINED = "declined"
    ACCEPTED = "accepted"


class ProposalStatus(str, enum.Enum):
    PENDING = "pending"
    WITHDRAWN = "withdrawn"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class NegotiationMode(str, enum.Enum):
    LOCK = "lock"          # курьер фиксирует сумму, первый успевший побеждает
    PROPOSAL = "proposal"  # курьеры предлагают, фермер выбирает одного


class TrackingStep(enum.IntEnum):
    """Шаги курьера по порядку; каждый открывает следующий."""
    ON_MY_WAY_TO_FARMER = 1
    REACHED_FARMER = 2
    PICKED_UP_ORDER = 3
    ON_MY_WAY_TO_BUYER = 4
    REACHED_BUYER = 5
    DELIVERED_ORDER = 6

    @property
    def flag(self) -> str:
        return self.name.lower()

    @classmethod
    def from_flag(cls, flag: str) -> "TrackingStep":
        return cls[flag.upper()]


TRACKING_STEPS_TOTAL = len(TrackingStep)


# --- Models ---

class Actor(Base):
    """Проекция участника из сервиса профилей: роль + координаты + чат для уведомлений."""
    __tablename__ = "actors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[ActorRole] = mapped_column(PgEnum(ActorRole, name="actor_role_enum"), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    telegram_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        {"comment": "Участники (фермеры, покупатели, курьеры)"},
    )


class TradableUnit(Base):
    __tablename__ = "units"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    kind: Mapped[UnitKind] = mapped_column(PgEnum(UnitKind, name="unit_kind_enum"), nullable=False)

    producer_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False, index=True)
    # Покупатель известен сразу для заказа и после принятия ставки для лота
    buyer_id: Mapped[Optional[str]] = mapped_column(ForeignKey("actors.id"), nullable=True, index=True)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    base_price: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[UnitStatus] = mapped_column(
        PgEnum(UnitStatus, name="unit_status_enum"), default=UnitStatus.ACTIVE, nullable=False, index=True
    )
    negotiation_mode: Mapped[Optional[NegotiationMode]] = mapped_column(
        PgEnum(NegotiationMode, name="negotiation_mode_enum"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    bidding_start_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    bidding_end_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    prep_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    prep_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    ready_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Оптимистическая блокировка: параллельная запись из другого процесса → StaleDataError
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    producer: Mapped["Actor"] = relationship("Actor", foreign_keys=[producer_id], lazy="selectin")
    buyer: Mapped[Optional["Actor"]] = relationship("Actor", foreign_keys=[buyer_id], lazy="selectin")
    bids: Mapped[List["Bid"]] = relationship(
        "Bid", back_populates="unit", cascade="all, delete-orphan", lazy="selectin",
        order_by="Bid.id",
    )
    accepted_bid: Mapped[Optional["AcceptedBid"]] = relationship(
        "AcceptedBid", back_populates="unit", uselist=False, cascade="all, delete-orphan", lazy="selectin"
    )
    proposals: Mapped[List["DeliveryProposal"]] = relationship(
        "DeliveryProposal", back_populates="unit", cascade="all, delete-orphan", lazy="selectin",
        order_by="DeliveryProposal.id",
    )
    assignment: Mapped[Optional["DeliveryAssignment"]] = relationship(
        "DeliveryAssignment", back_populates="unit", uselist=False, cascade="all, delete-orphan", lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        {"comment": "Лоты и заказы"},
    )

    @property
    def live_bids(self) -> List["Bid"]:
        return [b for b in self.bids if b.status == BidStatus.LIVE]

    @property
    def pending_proposals(self) -> List["DeliveryProposal"]:
        return [p for p in self.proposals if p.status == ProposalStatus.PENDING]

    def live_bid_of(self, bidder_id: str) -> Optional["Bid"]:
        return next((b for b in self.live_bids if b.bidder_id == bidder_id), None)

    def pending_proposal_of(self, courier_id: str) -> Optional["DeliveryProposal"]:
        return next((p for p in self.pending_proposals if p.courier_id == courier_id), None)


class Bid(Base):
    __tablename__ = "bids"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id"), nullable=False, index=True)
    bidder_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    placed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    status: Mapped[BidStatus] = mapped_column(
        PgEnum(BidStatus, name="bid_status_enum"), default=BidStatus.LIVE, nullable=False
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    unit: Mapped["TradableUnit"] = relationship("TradableUnit", back_populates="bids")

    __table_args__ = (
        # У покупателя не больше одной живой ставки на лот
        Index(
            "uq_bids_live_per_bidder", "unit_id", "bidder_id", unique=True,
            sqlite_where=text("status = 'LIVE'"),
            postgresql_where=text("status = 'LIVE'"),
        ),
        {"comment": "Ставки покупателей"},
    )


class AcceptedBid(Base):
    __tablename__ = "accepted_bids"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id"), nullable=False, unique=True)
    bid_id: Mapped[int] = mapped_column(ForeignKey("bids.id"), nullable=False)
    buyer_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    accepted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    # True если ставка принята автоматически после окончания торгов
    auto_accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    unit: Mapped["TradableUnit"] = relationship("TradableUnit", back_populates="accepted_bid")


class DeliveryProposal(Base):
    __tablename__ = "delivery_proposals"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id"), nullable=False, index=True)
    courier_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    proposed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        PgEnum(ProposalStatus, name="proposal_status_enum"), default=ProposalStatus.PENDING, nullable=False
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    unit: Mapped["TradableUnit"] = relationship("TradableUnit", back_populates="proposals")

    __table_args__ = (
        Index(
            "uq_proposals_pending_per_courier", "unit_id", "courier_id", unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        {"comment": "Предложения курьеров по сумме доставки"},
    )


class DeliveryAssignment(Base):
    __tablename__ = "delivery_assignments"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id"), nullable=False, unique=True)
    courier_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    mode: Mapped[NegotiationMode] = mapped_column(PgEnum(NegotiationMode, name="negotiation_mode_enum"), nullable=False)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    locked_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    # Сколько шагов трекинга выполнено (0..6), шаги идут строго по порядку
    completed_steps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_step_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    estimated_delivery_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    unit: Mapped["TradableUnit"] = relationship("TradableUnit", back_populates="assignment")

    @property
    def next_step(self) -> Optional[TrackingStep]:
        if self.completed_steps >= TRACKING_STEPS_TOTAL:
            return None
        return TrackingStep(self.completed_steps + 1)

    @property
    def is_complete(self) -> bool:
        return self.completed_steps >= TRACKING_STEPS_TOTAL

    @property
    def flags(self) -> Dict[str, bool]:
        return {step.flag: step <= self.completed_steps for step in TrackingStep}


class Rating(Base):
    __tablename__ = "ratings"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id"), nullable=False, index=True)
    rater_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False)
    subject_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), nullable=False, index=True)
    subject_role: Mapped[ActorRole] = mapped_column(PgEnum(ActorRole, name="actor_role_enum"), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("unit_id", "rater_id", "subject_id", name="uq_ratings_once"),
        {"comment": "Оценки после доставки"},
    )
