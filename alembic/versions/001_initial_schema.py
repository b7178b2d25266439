"""Initial schema - bookings and referrals.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", sa.String(32), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("rider_id", sa.String(64)),
        sa.Column("customer_name", sa.String(200)),
        sa.Column("phone", sa.String(32)),
        sa.Column("address", sa.Text, nullable=False),
        sa.Column("address_details", postgresql.JSONB, default={}),
        sa.Column("pickup_date", sa.String(20)),
        sa.Column("pickup_time", sa.String(40)),
        sa.Column("delivery_date", sa.String(20)),
        sa.Column("delivery_time", sa.String(40)),
        sa.Column("special_instructions", sa.Text),
        sa.Column("services", postgresql.JSONB, default=[]),
        sa.Column("line_items", postgresql.JSONB, default=[]),
        sa.Column("items_summary", sa.Text, server_default=""),
        sa.Column("charges_breakdown", postgresql.JSONB, default={}),
        sa.Column("total_price", sa.Float, nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("final_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("referral_code", sa.String(50)),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bookings_order_id", "bookings", ["order_id"], unique=True)
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"])
    op.create_index("ix_bookings_rider_id", "bookings", ["rider_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payment_status", "bookings", ["payment_status"])
    op.create_index("ix_bookings_created_at", "bookings", ["created_at"])

    # Referrals
    op.create_table(
        "referrals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_id", sa.String(64), nullable=False),
        sa.Column("referee_id", sa.String(64)),
        sa.Column("referral_code", sa.String(50), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("discount_percentage", sa.Integer, nullable=False, server_default="50"),
        sa.Column("referee_discount_applied", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("referrer_discount_applied", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("referee_first_booking_id", postgresql.UUID(as_uuid=True)),
        sa.Column("referrer_reward_booking_id", postgresql.UUID(as_uuid=True)),
        sa.Column("registration_date", sa.DateTime(timezone=True)),
        sa.Column("first_payment_date", sa.DateTime(timezone=True)),
        sa.Column("reward_date", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB, default={}),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_referrals_code", "referrals", ["referral_code"], unique=True)
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])
    op.create_index("ix_referrals_referee_id", "referrals", ["referee_id"])
    op.create_index("ix_referrals_status", "referrals", ["status"])
    op.create_index("ix_referrals_expires_at", "referrals", ["expires_at"])


def downgrade() -> None:
    op.drop_table("referrals")
    op.drop_table("bookings")
