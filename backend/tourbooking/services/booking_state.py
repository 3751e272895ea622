"""
Booking state guard.

A booking carries two status columns. Only the (seat, payment) pairs in
LEGAL_STATES may coexist; `apply_transition` is the one place that writes
either column, and it appends one history row per axis that changed.

Seats count against the instance while seat_status is pending or confirmed.
Lock order is booking rows first (ascending id), then the instance row.
`release_seats` decrements the instance counter and must run exactly once,
on the transition out of a counted state.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import InvalidStateTransition, InvariantViolation, NotFoundError
from tourbooking.core.logging import get_logger
from tourbooking.core.metrics import record_seats_released
from tourbooking.db.base import utcnow
from tourbooking.models.booking import Booking, BookingHistory, PaymentStatus, SeatStatus
from tourbooking.services.instance_service import lock_instance

logger = get_logger(__name__)

S = SeatStatus
P = PaymentStatus

LEGAL_STATES = frozenset({
    (S.PENDING, P.PENDING),
    (S.CONFIRMED, P.PAID),
    (S.CONFIRMED, P.MANUAL_PENDING),
    (S.CONFIRMED, P.MANUAL_PAID),
    (S.CONFIRMED, P.COMPLIMENTARY),
    (S.CANCELLED, P.FAILED),
    (S.CANCELLED, P.VOID),
    (S.CANCELLED, P.REFUND_PENDING),
    (S.CANCELLED, P.REFUND_SUCCESS),
    (S.CANCELLED, P.REFUND_MANUAL),
    (S.TRIAGE, P.PAID),
    (S.TRIAGE, P.MANUAL_PAID),
    (S.TRIAGE, P.REFUND_PENDING),
    (S.TRIAGE, P.REFUND_FAILED),
})

COUNTED_SEAT_STATES = frozenset({S.PENDING, S.CONFIRMED})


def holds_seats(booking: Booking) -> bool:
    return SeatStatus(booking.seat_status) in COUNTED_SEAT_STATES


async def lock_booking(db: AsyncSession, booking_id: int) -> Booking:
    """SELECT ... FOR UPDATE on the booking, discarding any stale identity-map copy."""
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": booking_id})
    return booking


async def lock_counted_bookings(db: AsyncSession, instance_id: int) -> list[Booking]:
    """Lock every booking holding seats on the instance, in id order."""
    result = await db.execute(
        select(Booking)
        .where(
            Booking.instance_id == instance_id,
            Booking.seat_status.in_([s.value for s in COUNTED_SEAT_STATES]),
        )
        .order_by(Booking.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def counted_booking_ids(db: AsyncSession, instance_id: int) -> set[int]:
    result = await db.execute(
        select(Booking.id).where(
            Booking.instance_id == instance_id,
            Booking.seat_status.in_([s.value for s in COUNTED_SEAT_STATES]),
        )
    )
    return set(result.scalars().all())


def record_history(
    db: AsyncSession,
    booking: Booking,
    axis: str,
    previous: Optional[str],
    new: str,
    changed_by: Optional[str],
    reason: Optional[str],
) -> BookingHistory:
    entry = BookingHistory(
        booking_id=booking.id,
        axis=axis,
        previous_status=previous,
        new_status=new,
        changed_by=changed_by,
        reason=reason,
    )
    db.add(entry)
    return entry


def apply_transition(
    db: AsyncSession,
    booking: Booking,
    seat: Optional[SeatStatus] = None,
    payment: Optional[PaymentStatus] = None,
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> bool:
    """
    Move `booking` to (seat, payment); a None axis keeps its current value.
    Raises InvalidStateTransition for a pair outside LEGAL_STATES.
    Returns False when nothing changed.
    """
    current_seat, current_payment = booking.state
    target = (seat or current_seat, payment or current_payment)

    if target not in LEGAL_STATES:
        raise InvalidStateTransition(
            booking.id,
            (current_seat.value, current_payment.value),
            (target[0].value, target[1].value),
        )
    if target == (current_seat, current_payment):
        return False

    if target[0] != current_seat:
        booking.seat_status = target[0].value
        record_history(db, booking, "seat", current_seat.value, target[0].value, changed_by, reason)
    if target[1] != current_payment:
        booking.payment_status = target[1].value
        record_history(db, booking, "payment", current_payment.value, target[1].value, changed_by, reason)

    if target[0] == S.CANCELLED and booking.cancelled_at is None:
        booking.cancelled_at = utcnow()
        booking.cancellation_reason = reason

    logger.info(
        "booking_transition",
        booking_id=booking.id,
        seat_from=current_seat.value,
        seat_to=target[0].value,
        payment_from=current_payment.value,
        payment_to=target[1].value,
        changed_by=changed_by,
    )
    return True


async def release_seats(db: AsyncSession, booking: Booking, reason: str) -> int:
    """
    Return the booking's seats to its instance. Call before `apply_transition`
    moves the seat axis out of a counted state; a booking that no longer holds
    seats releases nothing.
    """
    if not holds_seats(booking):
        return 0

    instance = await lock_instance(db, booking.instance_id)
    if instance.booked_seats < booking.seats:
        raise InvariantViolation(
            f"Instance {instance.id} counts fewer seats than booking {booking.id} holds",
            details={"instance_id": instance.id, "booked_seats": instance.booked_seats, "seats": booking.seats},
        )
    instance.booked_seats -= booking.seats

    record_seats_released(reason, booking.seats)
    logger.info(
        "seats_released",
        booking_id=booking.id,
        instance_id=instance.id,
        seats=booking.seats,
        booked_seats=instance.booked_seats,
        reason=reason,
    )
    return booking.seats
