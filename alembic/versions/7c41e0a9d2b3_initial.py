"""initial — участники, лоты, ставки, доставка, оценки.

Revision ID: 7c41e0a9d2b3
Revises:
Create Date: 2026-10-19 11:02:37.418205

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7c41e0a9d2b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum хранит имена членов (как SQLAlchemy по умолчанию)
ENUMS = {
    "actor_role_enum": ("PRODUCER", "CONSUMER", "COURIER", "ADMIN"),
    "unit_kind_enum": ("LISTING", "ORDER"),
    "unit_status_enum": ("ACTIVE", "ACCEPTED", "PREPARING", "READY", "PICKED_UP", "DELIVERED", "CANCELLED"),
    "negotiation_mode_enum": ("LOCK", "PROPOSAL"),
    "bid_status_enum": ("LIVE", "SUPERSEDED", "WITHDRAWN", "DECLINED", "ACCEPTED"),
    "proposal_status_enum": ("PENDING", "WITHDRAWN", "ACCEPTED", "REJECTED"),
}


def _enum(name: str) -> postgresql.ENUM:
    # Тип создаётся один раз в upgrade(); negotiation_mode_enum используется в двух таблицах
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "actors",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("role", _enum("actor_role_enum"), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("telegram_chat_id", sa.BigInteger(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _ts("created_at", nullable=False),
        comment="Участники (фермеры, покупатели, курьеры)",
    )
    op.create_index("ix_actors_role", "actors", ["role"])

    op.create_table(
        "units",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("kind", _enum("unit_kind_enum"), nullable=False),
        sa.Column("producer_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("base_price", sa.Float(), nullable=False),
        sa.Column("status", _enum("unit_status_enum"), nullable=False),
        sa.Column("negotiation_mode", _enum("negotiation_mode_enum"), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("bidding_start_at"),
        _ts("bidding_end_at"),
        _ts("accepted_at"),
        sa.Column("prep_time_minutes", sa.Integer(), nullable=True),
        _ts("prep_started_at"),
        _ts("ready_at"),
        _ts("picked_up_at"),
        _ts("delivered_at"),
        _ts("cancelled_at"),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        comment="Лоты и заказы",
    )
    op.create_index("ix_units_producer_id", "units", ["producer_id"])
    op.create_index("ix_units_buyer_id", "units", ["buyer_id"])
    op.create_index("ix_units_status", "units", ["status"])
    op.create_index("ix_units_created_at", "units", ["created_at"])

    op.create_table(
        "bids",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("unit_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), sa.ForeignKey("units.id"), nullable=False),
        sa.Column("bidder_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        _ts("placed_at", nullable=False),
        sa.Column("status", _enum("bid_status_enum"), nullable=False),
        _ts("closed_at"),
        comment="Ставки покупателей",
    )
    op.create_index("ix_bids_unit_id", "bids", ["unit_id"])
    op.create_index("ix_bids_bidder_id", "bids", ["bidder_id"])
    op.create_index(
        "uq_bids_live_per_bidder", "bids", ["unit_id", "bidder_id"], unique=True,
        sqlite_where=sa.text("status = 'LIVE'"),
        postgresql_where=sa.text("status = 'LIVE'"),
    )

    op.create_table(
        "accepted_bids",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("unit_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), sa.ForeignKey("units.id"), nullable=False, unique=True),
        sa.Column("bid_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), sa.ForeignKey("bids.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        _ts("accepted_at", nullable=False),
        sa.Column("auto_accepted", sa.Boolean(), nullable=False),
    )

    op.create_table(
        "delivery_proposals",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("unit_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), sa.ForeignKey("units.id"), nullable=False),
        sa.Column("courier_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        _ts("proposed_at", nullable=False),
        sa.Column("status", _enum("proposal_status_enum"), nullable=False),
        _ts("closed_at"),
        comment="Предложения курьеров по сумме доставки",
    )
    op.create_index("ix_delivery_proposals_unit_id", "delivery_proposals", ["unit_id"])
    op.create_index("ix_delivery_proposals_courier_id", "delivery_proposals", ["courier_id"])
    op.create_index(
        "uq_proposals_pending_per_courier", "delivery_proposals", ["unit_id", "courier_id"], unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "delivery_assignments",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("unit_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), sa.ForeignKey("units.id"), nullable=False, unique=True),
        sa.Column("courier_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("mode", _enum("negotiation_mode_enum"), nullable=False),
        sa.Column("distance_km", sa.Float(), nullable=False),
        _ts("locked_at", nullable=False),
        sa.Column("completed_steps", sa.Integer(), nullable=False),
        _ts("last_step_at"),
        _ts("estimated_delivery_at"),
        _ts("delivered_at"),
    )
    op.create_index("ix_delivery_assignments_courier_id", "delivery_assignments", ["courier_id"])

    op.create_table(
        "ratings",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("unit_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), sa.ForeignKey("units.id"), nullable=False),
        sa.Column("rater_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("subject_id", sa.String(length=64), sa.ForeignKey("actors.id"), nullable=False),
        sa.Column("subject_role", _enum("actor_role_enum"), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=False),
        _ts("rated_at", nullable=False),
        sa.UniqueConstraint("unit_id", "rater_id", "subject_id", name="uq_ratings_once"),
        comment="Оценки после доставки",
    )
    op.create_index("ix_ratings_unit_id", "ratings", ["unit_id"])
    op.create_index("ix_ratings_subject_id", "ratings", ["subject_id"])


def downgrade() -> None:
    for table in (
        "ratings", "delivery_assignments", "delivery_proposals", "accepted_bids", "bids", "units", "actors",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).drop(bind, checkfirst=True)
