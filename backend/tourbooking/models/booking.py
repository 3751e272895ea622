"""
Customers, bookings, passenger manifests and the booking audit trail.

Key design decisions:
- Seat state and payment state are two independent columns; which pairs may
  coexist is enforced by the transition guard in services/booking_state.py
- booking_reference is a short public handle, separate from the integer id
  that payment metadata carries
- Passengers are a partial manifest: their count never has to match `seats`
- History is append-only, one row per axis per transition
"""

import enum

from sqlalchemy import (
    Column, DateTime, ForeignKey, Integer, Numeric, String, Text, CheckConstraint,
)
from sqlalchemy.orm import relationship

from tourbooking.db.base import Base, TimestampMixin, utcnow


class SeatStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    TRIAGE = "triage"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUND_SUCCESS = "refund_success"
    REFUND_FAILED = "refund_failed"
    MANUAL_PENDING = "manual_pending"
    MANUAL_PAID = "manual_paid"
    COMPLIMENTARY = "complimentary"
    VOID = "void"
    REFUND_MANUAL = "refund_manual"


class Customer(Base, TimestampMixin):
    __tablename__ = "tour_customers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, email={self.email})>"


class Booking(Base, TimestampMixin):
    __tablename__ = "tour_bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_reference = Column(String(8), unique=True, index=True, nullable=False)
    instance_id = Column(Integer, ForeignKey("tour_instances.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("tour_customers.id"), nullable=False, index=True)
    seats = Column(Integer, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    seat_status = Column(String(20), nullable=False, default=SeatStatus.PENDING.value, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    refund_id = Column(String(255), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    customer_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    passengers = relationship(
        "Passenger",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Passenger.id",
    )

    __table_args__ = (
        CheckConstraint("seats > 0", name="check_booking_seats_positive"),
        CheckConstraint("total_amount >= 0", name="check_booking_amount_non_negative"),
    )

    @property
    def state(self) -> tuple:
        return SeatStatus(self.seat_status), PaymentStatus(self.payment_status)

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, ref={self.booking_reference}, seats={self.seats}, "
            f"seat={self.seat_status}, payment={self.payment_status})>"
        )


class Passenger(Base):
    __tablename__ = "tour_booking_passengers"

    id = Column(Integer, primary_key=True)
    booking_id = Column(
        Integer, ForeignKey("tour_bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    ticket_type = Column(String(100), nullable=True)

    booking = relationship("Booking", back_populates="passengers")


class BookingHistory(Base):
    __tablename__ = "tour_booking_history"

    id = Column(Integer, primary_key=True)
    booking_id = Column(
        Integer, ForeignKey("tour_bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    axis = Column(String(10), nullable=False)  # seat, payment
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    changed_by = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("axis IN ('seat', 'payment')", name="check_history_axis"),
    )
