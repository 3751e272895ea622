"""
Tests for payment confirmation, refunds, cancellations and webhook dispatch.
"""

from decimal import Decimal

import pytest

from conftest import SLOT_TIME, refetch
from tourbooking.core.exceptions import (
    ConflictError, ExternalServiceError, InvalidStateTransition, ValidationError,
)
from tourbooking.models.booking import Booking
from tourbooking.models.tour import TourInstance
from tourbooking.services import booking_service, payment_service
from tourbooking.services.instance_service import find_instance
from tourbooking.services.notification_service import drain_notifications


async def pending_booking(db, catalog, customer, slot_date, seats=3, intent_id="pi_live_1"):
    return await booking_service.create_booking(
        db,
        catalog.tour_id,
        slot_date,
        SLOT_TIME,
        seats,
        customer,
        total_amount=Decimal("50.00") * seats,
        payment_intent_id=intent_id,
    )


async def paid_booking(db, catalog, customer, slot_date, seats=3, intent_id="pi_live_1"):
    booking = await pending_booking(db, catalog, customer, slot_date, seats, intent_id)
    assert await payment_service.confirm_payment(db, booking.id, intent_id)
    return booking


async def booked_seats(db, instance_id):
    return (await refetch(db, TourInstance, instance_id)).booked_seats


def stripe_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.mark.asyncio
async def test_confirm_payment_is_idempotent(db_session, catalog, customer, slot_date, notifier):
    booking = await pending_booking(db_session, catalog, customer, slot_date)

    assert await payment_service.confirm_payment(db_session, booking.id, "pi_live_1", notifier) is True
    assert await payment_service.confirm_payment(db_session, booking.id, "pi_live_1", notifier) is False
    await drain_notifications()

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("confirmed", "paid")
    assert notifier.confirmed == [booking.booking_reference]
    assert await booked_seats(db_session, booking.instance_id) == 3

    history = await booking_service.get_booking_history(db_session, booking.id)
    assert [(h.axis, h.new_status) for h in history] == [
        ("seat", "pending"), ("seat", "confirmed"), ("payment", "paid"),
    ]


@pytest.mark.asyncio
async def test_intent_mismatch_is_ignored(db_session, catalog, customer, slot_date):
    booking = await pending_booking(db_session, catalog, customer, slot_date)
    assert await payment_service.confirm_payment(db_session, booking.id, "pi_someone_else") is False
    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("pending", "pending")


@pytest.mark.asyncio
async def test_failed_payment_releases_seats(db_session, catalog, customer, slot_date, notifier):
    booking = await pending_booking(db_session, catalog, customer, slot_date)

    assert await payment_service.fail_payment(db_session, booking.id, "pi_live_1", notifier) is True
    await drain_notifications()

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("cancelled", "failed")
    assert booking.cancelled_at is not None
    assert await booked_seats(db_session, booking.instance_id) == 0
    assert notifier.cancelled == [(booking.booking_reference, "payment_failed")]


@pytest.mark.asyncio
async def test_stale_failure_after_success_is_ignored(db_session, catalog, customer, slot_date):
    booking = await paid_booking(db_session, catalog, customer, slot_date)

    assert await payment_service.fail_payment(db_session, booking.id, "pi_live_1") is False

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("confirmed", "paid")
    assert await booked_seats(db_session, booking.instance_id) == 3


@pytest.mark.asyncio
async def test_success_after_failure_goes_to_triage(db_session, catalog, customer, slot_date):
    booking = await pending_booking(db_session, catalog, customer, slot_date)
    await payment_service.fail_payment(db_session, booking.id, "pi_live_1")

    assert await payment_service.confirm_payment(db_session, booking.id, "pi_live_1") is True

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("triage", "paid")
    assert await booked_seats(db_session, booking.instance_id) == 0
    assert [b.id for b in await payment_service.list_triage_bookings(db_session)] == [booking.id]


@pytest.mark.asyncio
async def test_refund_releases_seats(db_session, catalog, customer, slot_date, gateway, notifier):
    booking = await paid_booking(db_session, catalog, customer, slot_date, seats=3)
    assert await booked_seats(db_session, booking.instance_id) == 3

    booking = await payment_service.process_refund(
        db_session, gateway, booking.id, reason="customer request", changed_by="ops", notifier=notifier
    )
    await drain_notifications()

    assert booking.state == ("cancelled", "refund_pending")
    assert booking.refund_amount == Decimal("150.00")
    assert booking.refund_id == gateway.refunds[0]["id"]
    assert gateway.refunds[0]["payment_intent"] == "pi_live_1"
    assert gateway.refunds[0]["metadata"]["booking_id"] == str(booking.id)
    assert await booked_seats(db_session, booking.instance_id) == 0
    assert notifier.cancelled == [(booking.booking_reference, "customer request")]

    assert await payment_service.refund_succeeded(db_session, booking.id, booking.refund_id) is True
    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("cancelled", "refund_success")
    assert booking.refunded_at is not None


@pytest.mark.asyncio
async def test_partial_refund_bounds(db_session, catalog, customer, slot_date, gateway):
    booking = await paid_booking(db_session, catalog, customer, slot_date, seats=2)
    booking_id = booking.id

    with pytest.raises(ValidationError):
        await payment_service.process_refund(db_session, gateway, booking_id, amount=Decimal("100.01"))

    booking = await payment_service.process_refund(db_session, gateway, booking_id, amount=Decimal("40.00"))
    assert booking.refund_amount == Decimal("40.00")
    assert gateway.refunds[0]["amount"] == Decimal("40.00")


@pytest.mark.asyncio
async def test_refund_requires_paid_booking(db_session, catalog, customer, slot_date, gateway):
    booking = await pending_booking(db_session, catalog, customer, slot_date)
    with pytest.raises(InvalidStateTransition):
        await payment_service.process_refund(db_session, gateway, booking.id)
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_processor_refund_failure_leaves_booking_untouched(db_session, catalog, customer, slot_date, gateway):
    booking = await paid_booking(db_session, catalog, customer, slot_date, seats=2)
    booking_id = booking.id
    gateway.fail_refunds = True

    with pytest.raises(ExternalServiceError):
        await payment_service.process_refund(db_session, gateway, booking_id)

    booking = await refetch(db_session, Booking, booking_id)
    assert booking.state == ("confirmed", "paid")
    assert booking.refund_id is None
    assert await booked_seats(db_session, booking.instance_id) == 2


@pytest.mark.asyncio
async def test_failed_refund_goes_to_triage_and_can_be_retried(db_session, catalog, customer, slot_date, gateway):
    booking = await paid_booking(db_session, catalog, customer, slot_date)
    booking = await payment_service.process_refund(db_session, gateway, booking.id, reason="weather")
    first_refund = booking.refund_id

    result = await payment_service.handle_webhook_event(
        db_session,
        stripe_event(
            "refund.failed",
            {"id": first_refund, "status": "failed", "metadata": {"booking_id": str(booking.id)}},
        ),
    )
    assert result == "applied"

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("triage", "refund_failed")
    assert [b.id for b in await payment_service.list_triage_bookings(db_session)] == [booking.id]
    assert await booked_seats(db_session, booking.instance_id) == 0

    booking = await payment_service.retry_refund(db_session, gateway, booking.id, changed_by="ops")
    assert booking.state == ("triage", "refund_pending")
    assert booking.refund_id != first_refund

    # An outcome for the superseded refund no longer applies
    assert await payment_service.refund_succeeded(db_session, booking.id, first_refund) is False
    assert await payment_service.refund_succeeded(db_session, booking.id, booking.refund_id) is True
    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("cancelled", "refund_success")


@pytest.mark.asyncio
async def test_manual_refund_resolves_triage(db_session, catalog, customer, slot_date, gateway):
    booking = await paid_booking(db_session, catalog, customer, slot_date)
    await payment_service.process_refund(db_session, gateway, booking.id)
    await payment_service.refund_failed(db_session, booking.id)

    booking = await payment_service.resolve_triage_manual_refund(
        db_session, booking.id, reason="bank transfer", changed_by="ops"
    )
    assert booking.state == ("cancelled", "refund_manual")
    assert booking.refund_amount == booking.total_amount

    with pytest.raises(InvalidStateTransition):
        await payment_service.resolve_triage_manual_refund(db_session, booking.id)


@pytest.mark.asyncio
async def test_mark_as_paid(db_session, catalog, customer, slot_date):
    booking = await booking_service.create_manual_booking(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, 2, customer, total_amount=Decimal("80.00")
    )
    booking = await payment_service.mark_as_paid(db_session, booking.id, changed_by="ops")
    assert booking.state == ("confirmed", "manual_paid")

    with pytest.raises(InvalidStateTransition):
        await payment_service.mark_as_paid(db_session, booking.id)


@pytest.mark.asyncio
async def test_cancel_unpaid_booking_voids_it(db_session, catalog, customer, slot_date, notifier):
    booking = await pending_booking(db_session, catalog, customer, slot_date, seats=2)

    booking = await payment_service.cancel_booking(db_session, booking.id, "duplicate", "ops", notifier)
    await drain_notifications()
    assert booking.state == ("cancelled", "void")
    assert booking.cancellation_reason == "duplicate"
    assert await booked_seats(db_session, booking.instance_id) == 0
    assert notifier.cancelled == [(booking.booking_reference, "duplicate")]

    # Second cancel is a no-op and releases nothing further
    booking = await payment_service.cancel_booking(db_session, booking.id, "again", "ops", notifier)
    await drain_notifications()
    assert booking.state == ("cancelled", "void")
    assert len(notifier.cancelled) == 1


@pytest.mark.asyncio
async def test_cancel_paid_booking_goes_to_triage(db_session, catalog, customer, slot_date):
    booking = await paid_booking(db_session, catalog, customer, slot_date, seats=2)

    booking = await payment_service.cancel_booking(db_session, booking.id, "guide sick", "ops")
    assert booking.state == ("triage", "paid")
    assert await booked_seats(db_session, booking.instance_id) == 0

    with pytest.raises(ConflictError):
        await payment_service.cancel_booking(db_session, booking.id, "again", "ops")


@pytest.mark.asyncio
async def test_cancel_instance_cancels_holding_bookings(db_session, catalog, customer, slot_date, notifier):
    unpaid = await pending_booking(db_session, catalog, customer, slot_date, seats=1, intent_id="pi_a")
    paid = await paid_booking(db_session, catalog, customer, slot_date, seats=2, intent_id="pi_b")
    failed = await pending_booking(db_session, catalog, customer, slot_date, seats=1, intent_id="pi_c")
    await payment_service.fail_payment(db_session, failed.id, "pi_c")
    await drain_notifications()

    response = await payment_service.cancel_instance(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, "storm", changed_by="ops", notifier=notifier
    )
    await drain_notifications()

    assert response.affected_bookings == 2
    assert (await refetch(db_session, Booking, unpaid.id)).state == ("cancelled", "void")
    assert (await refetch(db_session, Booking, paid.id)).state == ("triage", "paid")
    assert (await refetch(db_session, Booking, failed.id)).state == ("cancelled", "failed")

    instance = await find_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME)
    instance = await refetch(db_session, TourInstance, instance.id)
    assert instance.status == "cancelled"
    assert instance.booked_seats == 0
    assert sorted(ref for ref, _ in notifier.cancelled) == sorted(
        [unpaid.booking_reference, paid.booking_reference]
    )


@pytest.mark.asyncio
async def test_webhook_dispatch(db_session, catalog, customer, slot_date, notifier):
    booking = await pending_booking(db_session, catalog, customer, slot_date)
    metadata = {"booking_id": str(booking.id)}

    succeeded = stripe_event("payment_intent.succeeded", {"id": "pi_live_1", "metadata": metadata})
    assert await payment_service.handle_webhook_event(db_session, succeeded, notifier) == "applied"
    assert await payment_service.handle_webhook_event(db_session, succeeded, notifier) == "ignored"

    failed = stripe_event("payment_intent.payment_failed", {"id": "pi_live_1", "metadata": metadata})
    assert await payment_service.handle_webhook_event(db_session, failed, notifier) == "ignored"

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("confirmed", "paid")


@pytest.mark.asyncio
async def test_webhook_without_correlation(db_session):
    unhandled = stripe_event("customer.created", {"id": "cus_1"})
    assert await payment_service.handle_webhook_event(db_session, unhandled) == "unhandled"

    no_metadata = stripe_event("payment_intent.succeeded", {"id": "pi_x", "metadata": {}})
    assert await payment_service.handle_webhook_event(db_session, no_metadata) == "ignored"

    unknown = stripe_event("payment_intent.succeeded", {"id": "pi_x", "metadata": {"booking_id": "999"}})
    assert await payment_service.handle_webhook_event(db_session, unknown) == "ignored"


@pytest.mark.asyncio
async def test_refund_updated_event_maps_status(db_session, catalog, customer, slot_date, gateway):
    booking = await paid_booking(db_session, catalog, customer, slot_date)
    booking = await payment_service.process_refund(db_session, gateway, booking.id)
    obj = {"id": booking.refund_id, "metadata": {"booking_id": str(booking.id)}}

    pending = stripe_event("refund.updated", {**obj, "status": "pending"})
    assert await payment_service.handle_webhook_event(db_session, pending) == "ignored"

    done = stripe_event("refund.updated", {**obj, "status": "succeeded"})
    assert await payment_service.handle_webhook_event(db_session, done) == "applied"

    booking = await refetch(db_session, Booking, booking.id)
    assert booking.state == ("cancelled", "refund_success")
