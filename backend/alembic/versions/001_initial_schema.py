"""Initial schema: tours, schedules, instances, tickets, pricing, bookings.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tours",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default=sa.text("15")),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("booking_window_days", sa.Integer(), nullable=False, server_default=sa.text("90")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("capacity > 0", name="check_tour_capacity_positive"),
        sa.CheckConstraint("booking_window_days >= 0", name="check_tour_window_non_negative"),
    )
    op.create_index("ix_tours_id", "tours", ["id"])

    op.create_table(
        "tour_schedules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tour_id", sa.Integer(), sa.ForeignKey("tours.id", ondelete="CASCADE"), nullable=False),
        sa.Column("schedule_config", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_tour_schedules_id", "tour_schedules", ["id"])
    op.create_index("ix_tour_schedules_tour_id", "tour_schedules", ["tour_id"])

    op.create_table(
        "tour_instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tour_id", sa.Integer(), sa.ForeignKey("tours.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("time", sa.Time(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("booked_seats", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(100), nullable=True),
        *_timestamps(),
        # The materializer's ON CONFLICT target
        sa.UniqueConstraint("tour_id", "date", "time", name="uq_tour_instance_slot"),
        sa.CheckConstraint("booked_seats >= 0", name="check_booked_seats_non_negative"),
        sa.CheckConstraint("booked_seats <= capacity", name="check_booked_lte_capacity"),
        sa.CheckConstraint(
            "status IN ('scheduled', 'cancelled', 'completed')", name="check_instance_status"
        ),
    )
    op.create_index("ix_tour_instances_id", "tour_instances", ["id"])
    # Availability and admin listings scan one tour over a date range
    op.create_index("ix_tour_instances_tour_date", "tour_instances", ["tour_id", "date"])

    op.create_table(
        "tour_tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("type", sa.String(20), nullable=False, server_default=sa.text("'atomic'")),
        *_timestamps(),
        sa.CheckConstraint("type IN ('atomic', 'combined')", name="check_ticket_type"),
    )
    op.create_index("ix_tour_tickets_id", "tour_tickets", ["id"])

    op.create_table(
        "tour_ticket_recipes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "combined_ticket_id", sa.Integer(),
            sa.ForeignKey("tour_tickets.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "atomic_ticket_id", sa.Integer(),
            sa.ForeignKey("tour_tickets.id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.UniqueConstraint("combined_ticket_id", "atomic_ticket_id", name="uq_recipe_component"),
        sa.CheckConstraint("quantity > 0", name="check_recipe_quantity_positive"),
    )
    op.create_index("ix_tour_ticket_recipes_combined_ticket_id", "tour_ticket_recipes", ["combined_ticket_id"])
    op.create_index("ix_tour_ticket_recipes_atomic_ticket_id", "tour_ticket_recipes", ["atomic_ticket_id"])

    op.create_table(
        "tour_pricing",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tour_id", sa.Integer(), sa.ForeignKey("tours.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "ticket_id", sa.Integer(), sa.ForeignKey("tour_tickets.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tour_id", "ticket_id", name="uq_tour_ticket_price"),
        sa.CheckConstraint("price >= 0", name="check_tour_price_non_negative"),
    )
    op.create_index("ix_tour_pricing_tour_id", "tour_pricing", ["tour_id"])

    op.create_table(
        "tour_instance_pricing",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("instance_id", sa.Integer(), sa.ForeignKey("tour_instances.id"), nullable=False),
        sa.Column(
            "ticket_id", sa.Integer(), sa.ForeignKey("tour_tickets.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("instance_id", "ticket_id", name="uq_instance_ticket_price"),
        sa.CheckConstraint("price >= 0", name="check_instance_price_non_negative"),
    )
    op.create_index("ix_tour_instance_pricing_instance_id", "tour_instance_pricing", ["instance_id"])

    op.create_table(
        "tour_customers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tour_customers_id", "tour_customers", ["id"])
    op.create_index("ix_tour_customers_email", "tour_customers", ["email"], unique=True)

    op.create_table(
        "tour_bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_reference", sa.String(8), nullable=False),
        sa.Column("instance_id", sa.Integer(), sa.ForeignKey("tour_instances.id"), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("tour_customers.id"), nullable=False),
        sa.Column("seats", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("seat_status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_notes", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("seats > 0", name="check_booking_seats_positive"),
        sa.CheckConstraint("total_amount >= 0", name="check_booking_amount_non_negative"),
    )
    op.create_index("ix_tour_bookings_id", "tour_bookings", ["id"])
    op.create_index("ix_tour_bookings_booking_reference", "tour_bookings", ["booking_reference"], unique=True)
    op.create_index("ix_tour_bookings_instance_id", "tour_bookings", ["instance_id"])
    op.create_index("ix_tour_bookings_customer_id", "tour_bookings", ["customer_id"])
    # Triage queue and per-instance cancellation filter on seat_status
    op.create_index("ix_tour_bookings_seat_status", "tour_bookings", ["seat_status"])
    op.create_index("ix_tour_bookings_payment_intent_id", "tour_bookings", ["payment_intent_id"])

    op.create_table(
        "tour_booking_passengers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer(), sa.ForeignKey("tour_bookings.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("ticket_type", sa.String(100), nullable=True),
    )
    op.create_index("ix_tour_booking_passengers_booking_id", "tour_booking_passengers", ["booking_id"])

    op.create_table(
        "tour_booking_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer(), sa.ForeignKey("tour_bookings.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("axis", sa.String(10), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("changed_by", sa.String(100), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("axis IN ('seat', 'payment')", name="check_history_axis"),
    )
    op.create_index("ix_tour_booking_history_booking_id", "tour_booking_history", ["booking_id"])


def downgrade() -> None:
    op.drop_table("tour_booking_history")
    op.drop_table("tour_booking_passengers")
    op.drop_table("tour_bookings")
    op.drop_table("tour_customers")
    op.drop_table("tour_instance_pricing")
    op.drop_table("tour_pricing")
    op.drop_table("tour_ticket_recipes")
    op.drop_table("tour_tickets")
    op.drop_table("tour_instances")
    op.drop_table("tour_schedules")
    op.drop_table("tours")
