"""
Payment and refund reconciliation.

Stripe delivers webhooks at least once and in no guaranteed order. Every
handler here therefore:

  1. locks the booking row (SELECT ... FOR UPDATE)
  2. re-checks that the booking is in the state the event expects
  3. applies the transition through booking_state.apply_transition, or logs
     and ignores a stale/duplicate delivery

Admin actions that move money (refund, retry refund) call the processor
*before* touching state, so a processor failure leaves the booking exactly as
it was.
"""

from datetime import date, time
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import (
    ConflictError, ExternalServiceError, InvalidStateTransition, NotFoundError, ValidationError,
)
from tourbooking.core.logging import get_logger
from tourbooking.core.metrics import record_refund, record_webhook_event
from tourbooking.db.base import utcnow
from tourbooking.db.session import atomic
from tourbooking.infrastructure.payments import PaymentGateway
from tourbooking.models.booking import Booking, PaymentStatus, SeatStatus
from tourbooking.models.tour import InstanceStatus
from tourbooking.schemas.tour import InstanceCancelResponse
from tourbooking.services.booking_state import (
    apply_transition, counted_booking_ids, lock_booking, lock_counted_bookings, release_seats,
)
from tourbooking.services.cache_service import invalidate_availability_cache
from tourbooking.services.instance_service import find_or_create_instance, lock_instance
from tourbooking.services.notification_service import (
    BookingContext, LoggingNotifier, Notifier, load_context, notify_cancelled, notify_confirmed,
)
from tourbooking.services.tour_service import get_tour

logger = get_logger(__name__)

S = SeatStatus
P = PaymentStatus

_default_notifier = LoggingNotifier()

MAX_INSTANCE_CANCEL_ATTEMPTS = 3


class _BookingsChanged(Exception):
    """A booking took seats on the instance after the booking rows were locked."""


def _rejected(booking: Booking, seat: SeatStatus, payment: PaymentStatus) -> InvalidStateTransition:
    return InvalidStateTransition(
        booking.id,
        (booking.seat_status, booking.payment_status),
        (seat.value, payment.value),
    )


def _refund_metadata(booking: Booking) -> dict[str, str]:
    return {"booking_id": str(booking.id), "booking_reference": booking.booking_reference}


# ---------------------------------------------------------------------------
# Payment intent events
# ---------------------------------------------------------------------------

async def confirm_payment(
    db: AsyncSession,
    booking_id: int,
    payment_intent_id: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> bool:
    """
    payment_intent.succeeded: (pending, pending) -> (confirmed, paid).

    A success that arrives after the booking was already cancelled unpaid
    (failed card then a successful retry, or an admin void) means money was
    taken for released seats: the booking goes to (triage, paid) for an admin.
    """
    ctx: Optional[BookingContext] = None
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if payment_intent_id and booking.payment_intent_id and booking.payment_intent_id != payment_intent_id:
            logger.warning(
                "webhook_intent_mismatch",
                booking_id=booking_id,
                expected=booking.payment_intent_id,
                received=payment_intent_id,
            )
            return False

        state = booking.state
        if state == (S.PENDING, P.PENDING):
            apply_transition(db, booking, S.CONFIRMED, P.PAID, changed_by="stripe", reason="payment_succeeded")
            ctx = await load_context(db, booking)
        elif state in {(S.CANCELLED, P.FAILED), (S.CANCELLED, P.VOID)}:
            apply_transition(db, booking, S.TRIAGE, P.PAID, changed_by="stripe", reason="payment_after_cancel")
            logger.warning("payment_received_for_cancelled_booking", booking_id=booking_id)
        else:
            logger.info("webhook_stale", webhook_event="payment_succeeded", booking_id=booking_id, state=str(state))
            return False

    if ctx is not None:
        notify_confirmed(notifier or _default_notifier, ctx)
    return True


async def fail_payment(
    db: AsyncSession,
    booking_id: int,
    payment_intent_id: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> bool:
    """payment_intent.payment_failed: (pending, pending) -> (cancelled, failed), seats released."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if payment_intent_id and booking.payment_intent_id and booking.payment_intent_id != payment_intent_id:
            logger.warning("webhook_intent_mismatch", booking_id=booking_id, received=payment_intent_id)
            return False
        if booking.state != (S.PENDING, P.PENDING):
            # A failed attempt reported after a later success must not undo it
            logger.info("webhook_stale", webhook_event="payment_failed", booking_id=booking_id, state=str(booking.state))
            return False

        await release_seats(db, booking, reason="payment_failed")
        apply_transition(db, booking, S.CANCELLED, P.FAILED, changed_by="stripe", reason="payment_failed")
        ctx = await load_context(db, booking)

    await invalidate_availability_cache(ctx.tour.id)
    notify_cancelled(notifier or _default_notifier, ctx, "payment_failed")
    return True


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

async def process_refund(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking_id: int,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Booking:
    """
    Admin refund of a paid booking. The processor refund is issued first,
    while the booking row is locked; only then does the booking move to
    (cancelled, refund_pending) and release its seats. The final outcome
    arrives by webhook.
    """
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.payment_status != P.PAID.value:
            raise _rejected(booking, S.CANCELLED, P.REFUND_PENDING)
        if not booking.payment_intent_id:
            raise ValidationError(f"Booking {booking_id} has no processor payment to refund")

        refund_amount = amount if amount is not None else Decimal(booking.total_amount)
        if refund_amount <= 0 or refund_amount > booking.total_amount:
            raise ValidationError(
                "Refund amount must be positive and no more than the booking total",
                details={"amount": str(refund_amount), "total_amount": str(booking.total_amount)},
            )

        try:
            refund = await gateway.create_refund(
                booking.payment_intent_id, refund_amount, reason, _refund_metadata(booking)
            )
        except ExternalServiceError:
            record_refund(issued=False)
            raise
        record_refund(issued=True)

        booking.refund_id = refund.id
        booking.refund_amount = refund_amount
        await release_seats(db, booking, reason="refund")
        apply_transition(db, booking, S.CANCELLED, P.REFUND_PENDING, changed_by=changed_by, reason=reason)
        ctx = await load_context(db, booking)

    logger.info(
        "refund_requested",
        booking_id=booking_id,
        refund_id=booking.refund_id,
        amount=str(refund_amount),
        changed_by=changed_by,
    )
    await invalidate_availability_cache(ctx.tour.id)
    notify_cancelled(notifier or _default_notifier, ctx, reason)
    return booking


def _refund_matches(booking: Booking, refund_id: Optional[str]) -> bool:
    return not (refund_id and booking.refund_id and booking.refund_id != refund_id)


async def refund_succeeded(db: AsyncSession, booking_id: int, refund_id: Optional[str] = None) -> bool:
    """refund_pending -> refund_success; a booking waiting in triage is closed out as cancelled."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.payment_status != P.REFUND_PENDING.value or not _refund_matches(booking, refund_id):
            logger.info("webhook_stale", webhook_event="refund_succeeded", booking_id=booking_id, refund_id=refund_id)
            return False

        apply_transition(db, booking, S.CANCELLED, P.REFUND_SUCCESS, changed_by="stripe", reason="refund_succeeded")
        booking.refunded_at = utcnow()
    return True


async def refund_failed(db: AsyncSession, booking_id: int, refund_id: Optional[str] = None) -> bool:
    """refund_pending -> (triage, refund_failed). Seats stay released."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.payment_status != P.REFUND_PENDING.value or not _refund_matches(booking, refund_id):
            logger.info("webhook_stale", webhook_event="refund_failed", booking_id=booking_id, refund_id=refund_id)
            return False

        apply_transition(db, booking, S.TRIAGE, P.REFUND_FAILED, changed_by="stripe", reason="refund_failed")
    logger.warning("refund_failed_needs_triage", booking_id=booking_id, refund_id=refund_id)
    return True


async def retry_refund(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking_id: int,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
) -> Booking:
    """(triage, refund_failed) -> (triage, refund_pending) with a fresh processor refund."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.state != (S.TRIAGE, P.REFUND_FAILED):
            raise _rejected(booking, S.TRIAGE, P.REFUND_PENDING)

        amount = booking.refund_amount if booking.refund_amount is not None else booking.total_amount
        try:
            refund = await gateway.create_refund(
                booking.payment_intent_id, Decimal(amount), reason, _refund_metadata(booking)
            )
        except ExternalServiceError:
            record_refund(issued=False)
            raise
        record_refund(issued=True)

        booking.refund_id = refund.id
        apply_transition(db, booking, payment=P.REFUND_PENDING, changed_by=changed_by, reason=reason or "refund_retry")

    logger.info("refund_retried", booking_id=booking_id, refund_id=booking.refund_id, changed_by=changed_by)
    return booking


async def resolve_triage_manual_refund(
    db: AsyncSession,
    booking_id: int,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
) -> Booking:
    """Money returned outside the processor: triage -> (cancelled, refund_manual)."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.state not in {(S.TRIAGE, P.REFUND_FAILED), (S.TRIAGE, P.MANUAL_PAID)}:
            raise _rejected(booking, S.CANCELLED, P.REFUND_MANUAL)

        apply_transition(
            db, booking, S.CANCELLED, P.REFUND_MANUAL,
            changed_by=changed_by, reason=reason or "manual_refund",
        )
        booking.refund_amount = booking.total_amount
        booking.refunded_at = utcnow()

    logger.info("manual_refund_recorded", booking_id=booking_id, changed_by=changed_by)
    return booking


# ---------------------------------------------------------------------------
# Admin booking actions
# ---------------------------------------------------------------------------

async def mark_as_paid(
    db: AsyncSession,
    booking_id: int,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
) -> Booking:
    """(confirmed, manual_pending) -> (confirmed, manual_paid)."""
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if booking.state != (S.CONFIRMED, P.MANUAL_PENDING):
            raise _rejected(booking, S.CONFIRMED, P.MANUAL_PAID)
        apply_transition(db, booking, payment=P.MANUAL_PAID, changed_by=changed_by, reason=reason or "marked_paid")

    logger.info("booking_marked_paid", booking_id=booking_id, changed_by=changed_by)
    return booking


async def cancel_booking_locked(
    db: AsyncSession,
    booking: Booking,
    reason: Optional[str],
    changed_by: Optional[str],
    release_reason: str = "cancel",
) -> bool:
    """
    Cancel a booking whose row the caller has locked. Returns False for an
    already cancelled booking.

      pending, or confirmed but unpaid  -> (cancelled, void)
      confirmed and paid / manual_paid  -> (triage, same payment) for a refund decision
    """
    seat, payment = booking.state
    if seat == S.CANCELLED:
        return False
    if seat == S.TRIAGE:
        raise ConflictError(
            f"Booking {booking.id} is already in triage",
            details={"booking_id": booking.id, "payment_status": payment.value},
        )

    await release_seats(db, booking, reason=release_reason)
    if payment in (P.PAID, P.MANUAL_PAID):
        apply_transition(db, booking, seat=S.TRIAGE, changed_by=changed_by, reason=reason)
    else:
        apply_transition(db, booking, S.CANCELLED, P.VOID, changed_by=changed_by, reason=reason)
    return True


async def cancel_booking(
    db: AsyncSession,
    booking_id: int,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Booking:
    ctx = None
    async with atomic(db):
        booking = await lock_booking(db, booking_id)
        if await cancel_booking_locked(db, booking, reason, changed_by):
            ctx = await load_context(db, booking)

    if ctx is None:
        logger.info("booking_already_cancelled", booking_id=booking_id)
        return booking

    logger.info(
        "booking_cancelled",
        booking_id=booking_id,
        seat_status=booking.seat_status,
        payment_status=booking.payment_status,
        changed_by=changed_by,
    )
    await invalidate_availability_cache(ctx.tour.id)
    notify_cancelled(notifier or _default_notifier, ctx, reason)
    return booking


async def cancel_instance(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    reason: str,
    changed_by: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> InstanceCancelResponse:
    """
    Cancel one departure. A virtual slot is materialized first so the
    cancellation is recorded (and hides the slot from availability).
    Every booking still holding seats goes through the per-booking cancel
    path in the same transaction. The booking rows are locked before the
    instance row, the order every other seat release takes.
    """
    capacity = (await get_tour(db, tour_id)).capacity
    for attempt in range(1, MAX_INSTANCE_CANCEL_ATTEMPTS + 1):
        contexts: list[BookingContext] = []
        try:
            async with atomic(db):
                instance_id = await find_or_create_instance(db, tour_id, slot_date, slot_time, capacity)
                bookings = await lock_counted_bookings(db, instance_id)
                instance = await lock_instance(db, instance_id)

                if instance.status == InstanceStatus.CANCELLED.value:
                    logger.info("instance_already_cancelled", instance_id=instance_id)
                    return InstanceCancelResponse(
                        instance_id=instance_id, affected_bookings=0, already_cancelled=True
                    )

                # A booking committed between the two locks is not locked yet
                if await counted_booking_ids(db, instance_id) - {b.id for b in bookings}:
                    raise _BookingsChanged(instance_id)

                instance.status = InstanceStatus.CANCELLED.value
                instance.cancellation_reason = reason
                instance.cancelled_at = utcnow()
                instance.cancelled_by = changed_by

                for booking in bookings:
                    if await cancel_booking_locked(
                        db, booking, reason, changed_by, release_reason="instance_cancelled"
                    ):
                        contexts.append(await load_context(db, booking))
            break
        except _BookingsChanged:
            logger.info("instance_cancel_retry", tour_id=tour_id, attempt=attempt)
    else:
        raise ConflictError(
            "Bookings on this departure kept changing, try again",
            details={"tour_id": tour_id, "date": str(slot_date), "time": str(slot_time)},
        )

    logger.info(
        "instance_cancelled",
        instance_id=instance_id,
        tour_id=tour_id,
        affected_bookings=len(contexts),
        changed_by=changed_by,
    )
    await invalidate_availability_cache(tour_id)
    for ctx in contexts:
        notify_cancelled(notifier or _default_notifier, ctx, reason)
    return InstanceCancelResponse(instance_id=instance_id, affected_bookings=len(contexts))


async def list_triage_bookings(db: AsyncSession) -> list[Booking]:
    result = await db.execute(
        select(Booking).where(Booking.seat_status == S.TRIAGE.value).order_by(Booking.updated_at)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Webhook dispatch
# ---------------------------------------------------------------------------

REFUND_STATUS_HANDLERS = {
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "failed",
}


def _booking_id_from(obj: dict[str, Any]) -> Optional[int]:
    raw = (obj.get("metadata") or {}).get("booking_id")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


async def _dispatch_event(
    db: AsyncSession, event_type: str, obj: dict[str, Any], booking_id: int, notifier: Optional[Notifier]
) -> Optional[bool]:
    """Returns None for an event type this engine does not act on."""
    if event_type == "payment_intent.succeeded":
        return await confirm_payment(db, booking_id, obj.get("id"), notifier)
    if event_type == "payment_intent.payment_failed":
        return await fail_payment(db, booking_id, obj.get("id"), notifier)
    if event_type in ("refund.created", "refund.updated"):
        outcome = REFUND_STATUS_HANDLERS.get(obj.get("status"))
        if outcome == "succeeded":
            return await refund_succeeded(db, booking_id, obj.get("id"))
        if outcome == "failed":
            return await refund_failed(db, booking_id, obj.get("id"))
        return False
    if event_type == "refund.failed":
        return await refund_failed(db, booking_id, obj.get("id"))
    return None


HANDLED_EVENTS = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "refund.created",
    "refund.updated",
    "refund.failed",
})


async def handle_webhook_event(
    db: AsyncSession, event: dict[str, Any], notifier: Optional[Notifier] = None
) -> str:
    """
    Apply one verified processor event. Returns "applied", "ignored" or
    "unhandled". Errors propagate so the caller can ask for a redelivery.
    """
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type not in HANDLED_EVENTS:
        logger.info("webhook_unhandled", event_type=event_type, event_id=event.get("id"))
        record_webhook_event(event_type, "unhandled")
        return "unhandled"

    booking_id = _booking_id_from(obj)
    if booking_id is None:
        logger.warning("webhook_uncorrelated", event_type=event_type, event_id=event.get("id"), object_id=obj.get("id"))
        record_webhook_event(event_type, "ignored")
        return "ignored"

    try:
        applied = await _dispatch_event(db, event_type, obj, booking_id, notifier)
    except NotFoundError:
        logger.warning("webhook_unknown_booking", event_type=event_type, booking_id=booking_id)
        record_webhook_event(event_type, "ignored")
        return "ignored"
    except Exception:
        record_webhook_event(event_type, "error")
        raise

    result = "applied" if applied else "ignored"
    logger.info("webhook_processed", event_type=event_type, booking_id=booking_id, result=result)
    record_webhook_event(event_type, result)
    return result
