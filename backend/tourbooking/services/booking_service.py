"""
Booking service with concurrency-safe seat reservation.

CONCURRENCY STRATEGY: Pessimistic Locking on the Instance Row
=============================================================

Problem:
  Two customers try to book the last seats of one departure simultaneously.
  Both read booked_seats=13 of 15, both add 2, both succeed.
  Result: Overbooking.

Solution:
  Every booking runs as ONE transaction:

  1. Load the tour (default capacity for a virtual slot)
  2. Materialize the instance (INSERT ... ON CONFLICT DO NOTHING + SELECT)
  3. SELECT ... FOR UPDATE on the instance row
  4. Re-check status and free capacity *after* the lock is held
  5. Insert customer, booking, passengers and history; booked_seats += seats
  6. COMMIT (or roll back everything on any error)

  Bookers of one slot queue on the row lock; bookers of different slots never
  contend. The CHECK constraint booked_seats <= capacity is the final safety
  net.

Alternative approaches considered:
  - Optimistic version column with retry: a popular departure takes many
    requests for the same row at once, so most attempts would retry.
  - Queue-based admission: more moving parts than one row lock needs.
"""

import secrets
import time as clock
from datetime import date, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import (
    BookingEngineError, CapacityError, ConflictError, ExternalServiceError, NotFoundError,
    ReferenceGenerationExhausted, TourNotAvailable, ValidationError,
)
from tourbooking.core.logging import get_logger
from tourbooking.core.metrics import booking_latency, record_booking_attempt
from tourbooking.db.base import utcnow
from tourbooking.db.session import atomic
from tourbooking.infrastructure.payments import PaymentGateway
from tourbooking.models.booking import (
    Booking, BookingHistory, Customer, Passenger, PaymentStatus, SeatStatus,
)
from tourbooking.models.tour import InstanceStatus
from tourbooking.schemas.booking import CustomerIn, PassengerIn
from tourbooking.schemas.ticket import TicketSelection
from tourbooking.services import schedule as rules
from tourbooking.services.booking_state import (
    apply_transition, lock_booking, record_history, release_seats,
)
from tourbooking.services.cache_service import invalidate_availability_cache
from tourbooking.services.instance_service import find_or_create_instance, lock_instance, upsert_statement
from tourbooking.services.pricing_service import price_selection, resolve_instance_price
from tourbooking.services.tour_service import load_tour_rules

logger = get_logger(__name__)

MAX_REFERENCE_ATTEMPTS = 5


def generate_booking_reference() -> str:
    """8 upper-case hex characters."""
    return secrets.token_hex(4).upper()


async def _unique_reference(db: AsyncSession) -> str:
    for attempt in range(1, MAX_REFERENCE_ATTEMPTS + 1):
        reference = generate_booking_reference()
        taken = await db.scalar(select(Booking.id).where(Booking.booking_reference == reference))
        if taken is None:
            return reference
        logger.info("booking_reference_collision", attempt=attempt)
    raise ReferenceGenerationExhausted(
        f"Could not generate a unique booking reference after {MAX_REFERENCE_ATTEMPTS} attempts"
    )


async def upsert_customer(db: AsyncSession, customer: CustomerIn) -> int:
    """Insert or update a customer by (lower-cased) email; returns the id."""
    email = customer.email.lower()
    stmt = upsert_statement(db, Customer).values(
        email=email,
        first_name=customer.first_name,
        last_name=customer.last_name,
        phone=customer.phone,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["email"],
        set_={
            "first_name": stmt.excluded.first_name,
            "last_name": stmt.excluded.last_name,
            "phone": stmt.excluded.phone,
            "updated_at": utcnow(),
        },
    )
    await db.execute(stmt)
    return await db.scalar(select(Customer.id).where(Customer.email == email))


async def _validate_slot(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    enforce_window: bool,
    today: Optional[date],
):
    tour, config = await load_tour_rules(db, tour_id)
    if not tour.active:
        raise TourNotAvailable(f"Tour {tour_id} is not active", details={"tour_id": tour_id})
    if config is None or not rules.is_scheduled_slot(config, slot_date, slot_time):
        raise ValidationError(
            "Requested slot is not on the tour schedule",
            details={"tour_id": tour_id, "date": str(slot_date), "time": str(slot_time)},
        )
    if enforce_window:
        window_start, window_end = rules.booking_window(tour.booking_window_days, today)
        if not window_start <= slot_date <= window_end:
            raise ValidationError(
                "Requested date is outside the booking window",
                details={"window_start": str(window_start), "window_end": str(window_end)},
            )
    return tour


async def _price(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    seats: int,
    tickets: Optional[list[TicketSelection]],
) -> Optional[Decimal]:
    if tickets is None:
        return None
    quotes = await resolve_instance_price(db, tour_id, slot_date, slot_time)
    selected_seats, total = price_selection(tickets, quotes)
    if selected_seats != seats:
        raise ValidationError(
            f"Ticket selection covers {selected_seats} seats, booking requests {seats}",
            details={"selected_seats": selected_seats, "seats": seats},
        )
    return total


async def _book(
    db: AsyncSession,
    *,
    origin: str,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    seats: int,
    customer: CustomerIn,
    seat_status: SeatStatus,
    payment_status: PaymentStatus,
    tickets: Optional[list[TicketSelection]] = None,
    passengers: Optional[list[PassengerIn]] = None,
    total_amount: Optional[Decimal] = None,
    customer_notes: Optional[str] = None,
    admin_notes: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    changed_by: Optional[str] = None,
    enforce_window: bool = True,
    today: Optional[date] = None,
) -> Booking:
    if seats < 1:
        record_booking_attempt(origin, "invalid")
        raise ValidationError("seats must be at least 1")

    started = clock.perf_counter()
    try:
        async with atomic(db):
            tour = await _validate_slot(db, tour_id, slot_date, slot_time, enforce_window, today)
            priced = await _price(db, tour_id, slot_date, slot_time, seats, tickets)
            if payment_status == PaymentStatus.COMPLIMENTARY:
                amount = Decimal("0")
            elif priced is not None:
                amount = priced
            else:
                amount = total_amount if total_amount is not None else Decimal("0")

            instance_id = await find_or_create_instance(db, tour_id, slot_date, slot_time, tour.capacity)
            instance = await lock_instance(db, instance_id)

            if instance.status != InstanceStatus.SCHEDULED.value:
                raise TourNotAvailable(
                    f"Tour instance {instance.id} is {instance.status}",
                    details={"instance_id": instance.id, "status": instance.status},
                )
            if instance.available_seats < seats:
                logger.warning(
                    "booking_failed_no_seats",
                    instance_id=instance.id,
                    requested=seats,
                    available=instance.available_seats,
                )
                raise CapacityError(
                    f"Not enough seats. Requested: {seats}, Available: {instance.available_seats}",
                    details={"requested": seats, "available": instance.available_seats},
                )

            customer_id = await upsert_customer(db, customer)
            reference = await _unique_reference(db)

            booking = Booking(
                booking_reference=reference,
                instance_id=instance.id,
                customer_id=customer_id,
                seats=seats,
                total_amount=amount,
                seat_status=seat_status.value,
                payment_status=payment_status.value,
                payment_intent_id=payment_intent_id,
                customer_notes=customer_notes,
                admin_notes=admin_notes,
                passengers=[
                    Passenger(first_name=p.first_name, last_name=p.last_name, ticket_type=p.ticket_type)
                    for p in passengers or []
                ],
            )
            db.add(booking)
            instance.booked_seats += seats
            await db.flush()

            record_history(
                db, booking, "seat", None, seat_status.value,
                changed_by=changed_by or origin, reason="booking_created",
            )
    except CapacityError:
        record_booking_attempt(origin, "capacity")
        raise
    except ConflictError:
        record_booking_attempt(origin, "conflict")
        raise
    except (ValidationError, NotFoundError):
        record_booking_attempt(origin, "invalid")
        raise
    except Exception:
        record_booking_attempt(origin, "error")
        raise

    booking_latency.observe(clock.perf_counter() - started)
    record_booking_attempt(origin, "success")
    await invalidate_availability_cache(tour_id)

    logger.info(
        "booking_created",
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        instance_id=booking.instance_id,
        seats=seats,
        total_amount=str(booking.total_amount),
        seat_status=booking.seat_status,
        payment_status=booking.payment_status,
        origin=origin,
    )
    return booking


async def create_booking(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    seats: int,
    customer: CustomerIn,
    tickets: Optional[list[TicketSelection]] = None,
    passengers: Optional[list[PassengerIn]] = None,
    total_amount: Optional[Decimal] = None,
    customer_notes: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    today: Optional[date] = None,
) -> Booking:
    """Public booking: (pending, pending) until the payment webhook arrives."""
    return await _book(
        db,
        origin="online",
        tour_id=tour_id,
        slot_date=slot_date,
        slot_time=slot_time,
        seats=seats,
        customer=customer,
        seat_status=SeatStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        tickets=tickets,
        passengers=passengers,
        total_amount=total_amount,
        customer_notes=customer_notes,
        payment_intent_id=payment_intent_id,
        today=today,
    )


async def create_manual_booking(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    seats: int,
    customer: CustomerIn,
    tickets: Optional[list[TicketSelection]] = None,
    passengers: Optional[list[PassengerIn]] = None,
    total_amount: Optional[Decimal] = None,
    complimentary: bool = False,
    customer_notes: Optional[str] = None,
    admin_notes: Optional[str] = None,
    changed_by: Optional[str] = None,
) -> Booking:
    """
    Admin booking (phone, walk-in, comp). Seats are confirmed immediately and
    the booking window is not enforced; payment is settled off-platform.
    """
    notes = f"Manual booking by {changed_by or 'admin'}"
    if admin_notes:
        notes = f"{notes}: {admin_notes}"
    return await _book(
        db,
        origin="manual",
        tour_id=tour_id,
        slot_date=slot_date,
        slot_time=slot_time,
        seats=seats,
        customer=customer,
        seat_status=SeatStatus.CONFIRMED,
        payment_status=PaymentStatus.COMPLIMENTARY if complimentary else PaymentStatus.MANUAL_PENDING,
        tickets=tickets,
        passengers=passengers,
        total_amount=total_amount,
        customer_notes=customer_notes,
        admin_notes=notes,
        changed_by=changed_by,
        enforce_window=False,
    )


async def quote_booking(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    seats: int,
    tickets: Optional[list[TicketSelection]],
    today: Optional[date] = None,
) -> Decimal:
    """Server-side total for a public booking, checked before any payment intent exists."""
    async with atomic(db):
        await _validate_slot(db, tour_id, slot_date, slot_time, True, today)
        total = await _price(db, tour_id, slot_date, slot_time, seats, tickets)
    if total is None or total <= 0:
        raise ValidationError("Online bookings need a priced ticket selection")
    return total


async def create_booking_with_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    seats: int,
    customer: CustomerIn,
    tickets: list[TicketSelection],
    passengers: Optional[list[PassengerIn]] = None,
    customer_notes: Optional[str] = None,
    today: Optional[date] = None,
) -> tuple[Booking, Optional[str]]:
    """
    Two-phase payment correlation:
      1. create the intent (amount + slot metadata) for the client secret
      2. create the pending booking carrying the intent id
      3. write booking_id and reference back into the intent metadata, which
         is what webhooks correlate on
    """
    total = await quote_booking(db, tour_id, slot_date, slot_time, seats, tickets, today)

    intent = await gateway.create_intent(
        total,
        {
            "tour_id": str(tour_id),
            "date": slot_date.isoformat(),
            "time": slot_time.strftime("%H:%M"),
            "seats": str(seats),
        },
    )

    try:
        booking = await create_booking(
            db,
            tour_id,
            slot_date,
            slot_time,
            seats,
            customer,
            tickets=tickets,
            passengers=passengers,
            customer_notes=customer_notes,
            payment_intent_id=intent.id,
            today=today,
        )
    except BookingEngineError:
        # Nothing references the intent; it expires unpaid on the processor side
        logger.warning("payment_intent_orphaned", payment_intent_id=intent.id)
        raise

    try:
        await gateway.update_intent_metadata(
            intent.id,
            {"booking_id": str(booking.id), "booking_reference": booking.booking_reference},
        )
    except ExternalServiceError:
        logger.error(
            "payment_intent_correlation_failed",
            booking_id=booking.id,
            payment_intent_id=intent.id,
        )
        await _void_uncorrelated_booking(db, booking.id, tour_id)
        raise

    return booking, intent.client_secret


async def _void_uncorrelated_booking(db: AsyncSession, booking_id: int, tour_id: int) -> None:
    """
    A booking whose intent never received its booking_id cannot be confirmed
    by webhook. Void it so its seats go back on sale.
    """
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.state != (SeatStatus.PENDING, PaymentStatus.PENDING):
            return
        await release_seats(db, booking, reason="payment_correlation_failed")
        apply_transition(
            db, booking,
            seat=SeatStatus.CANCELLED, payment=PaymentStatus.VOID,
            changed_by="system", reason="payment_correlation_failed",
        )

    await invalidate_availability_cache(tour_id)
    logger.warning("booking_voided_uncorrelated", booking_id=booking_id)


async def get_booking(db: AsyncSession, booking_id: int) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": booking_id})
    return booking


async def get_booking_by_reference(db: AsyncSession, reference: str) -> Booking:
    result = await db.execute(select(Booking).where(Booking.booking_reference == reference.upper()))
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {reference} not found", details={"booking_reference": reference})
    return booking


async def get_booking_history(db: AsyncSession, booking_id: int) -> list[BookingHistory]:
    await get_booking(db, booking_id)
    result = await db.execute(
        select(BookingHistory)
        .where(BookingHistory.booking_id == booking_id)
        .order_by(BookingHistory.id)
    )
    return list(result.scalars().all())


async def update_booking_passengers(
    db: AsyncSession,
    booking_id: int,
    passengers: list[PassengerIn],
    changed_by: Optional[str] = None,
) -> Booking:
    """Full overwrite of the manifest. The count need not match `seats`."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        booking.passengers = [
            Passenger(first_name=p.first_name, last_name=p.last_name, ticket_type=p.ticket_type)
            for p in passengers
        ]
        await db.flush()

    logger.info(
        "passengers_updated",
        booking_id=booking_id,
        passengers=len(passengers),
        changed_by=changed_by,
    )
    return booking
