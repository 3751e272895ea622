"""
Tests for just-in-time instance materialization, cancellation and listing.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import SLOT_TIME, make_tour, refetch
from tourbooking.core.exceptions import ConflictError, TourNotAvailable, ValidationError
from tourbooking.db.session import atomic
from tourbooking.models.booking import Booking
from tourbooking.models.tour import TourInstance
from tourbooking.services import booking_service, booking_state, instance_service, payment_service


@pytest.mark.asyncio
async def test_find_or_create_is_idempotent(db_session, catalog, slot_date):
    async with atomic(db_session):
        first = await instance_service.find_or_create_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, 10)
        second = await instance_service.find_or_create_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, 99)
    assert first == second

    instance = await refetch(db_session, TourInstance, first)
    assert instance.capacity == 10
    assert instance.booked_seats == 0
    assert instance.status == "scheduled"


@pytest.mark.asyncio
async def test_concurrent_materialization_yields_one_row(db_session, session_factory, catalog, slot_date):
    """N concurrent callers for one slot converge on a single instance id."""

    async def materialize():
        async with session_factory() as session:
            async with atomic(session):
                return await instance_service.find_or_create_instance(
                    session, catalog.tour_id, slot_date, SLOT_TIME, 10
                )

    ids = await asyncio.gather(*[materialize() for _ in range(8)])
    assert len(set(ids)) == 1

    rows = await db_session.scalar(
        select(func.count()).select_from(TourInstance).where(TourInstance.tour_id == catalog.tour_id)
    )
    assert rows == 1


@pytest.mark.asyncio
async def test_cancel_virtual_slot_materializes_it(db_session, catalog, slot_date):
    result = await payment_service.cancel_instance(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, "Storm warning", changed_by="ops"
    )
    assert result.affected_bookings == 0
    assert not result.already_cancelled

    instance = await refetch(db_session, TourInstance, result.instance_id)
    assert instance.status == "cancelled"
    assert instance.cancellation_reason == "Storm warning"
    assert instance.cancelled_by == "ops"

    again = await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Again")
    assert again.already_cancelled
    assert again.instance_id == result.instance_id


@pytest.mark.asyncio
async def test_cancel_instance_releases_seats_once(db_session, catalog, customer, slot_date, notifier):
    pending = await booking_service.create_booking(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, 2, customer
    )
    manual = await booking_service.create_manual_booking(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, 3, customer, changed_by="ops"
    )
    paid = await booking_service.create_booking(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, 1, customer, payment_intent_id="pi_paid"
    )
    await payment_service.confirm_payment(db_session, paid.id, "pi_paid", notifier)

    result = await payment_service.cancel_instance(
        db_session, catalog.tour_id, slot_date, SLOT_TIME, "Vessel fault", changed_by="ops", notifier=notifier
    )
    assert result.affected_bookings == 3

    instance = await refetch(db_session, TourInstance, result.instance_id)
    assert instance.booked_seats == 0

    assert (await refetch(db_session, Booking, pending.id)).state == ("cancelled", "void")
    assert (await refetch(db_session, Booking, manual.id)).state == ("cancelled", "void")
    assert (await refetch(db_session, Booking, paid.id)).state == ("triage", "paid")

    # A second cancellation must not release anything again
    again = await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Again")
    assert again.already_cancelled
    instance = await refetch(db_session, TourInstance, result.instance_id)
    assert instance.booked_seats == 0


@pytest.mark.asyncio
async def test_booking_cancelled_instance_is_refused(db_session, catalog, customer, slot_date):
    await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Closed")
    with pytest.raises(TourNotAvailable):
        await booking_service.create_booking(db_session, catalog.tour_id, slot_date, SLOT_TIME, 1, customer)


@pytest.mark.asyncio
async def test_reinstate_instance(db_session, catalog, customer, slot_date):
    await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Closed")
    instance = await instance_service.reinstate_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME)
    assert instance.status == "scheduled"
    assert instance.cancellation_reason is None

    booking = await booking_service.create_booking(db_session, catalog.tour_id, slot_date, SLOT_TIME, 1, customer)
    assert booking.seat_status == "pending"

    with pytest.raises(ValidationError):
        await instance_service.reinstate_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME)


@pytest.mark.asyncio
async def test_list_instances_merges_real_and_virtual(db_session, catalog, slot_date):
    await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Closed")

    views = await instance_service.list_instances(db_session, catalog.tour_id, slot_date, slot_date)
    assert [(v.time.strftime("%H:%M"), v.status, v.id is None) for v in views] == [
        ("09:00", "cancelled", False),
        ("14:00", "scheduled", True),
    ]

    cancelled = await instance_service.list_instances(
        db_session, catalog.tour_id, slot_date, slot_date, status="cancelled"
    )
    assert len(cancelled) == 1


@pytest.mark.asyncio
async def test_list_instances_keeps_cancelled_rows_on_blacked_out_days(db_session, slot_date):
    day = slot_date
    tour_id = await make_tour(db_session, blackout_ranges=[{"from": day.isoformat(), "to": day.isoformat()}])
    await payment_service.cancel_instance(db_session, tour_id, day, SLOT_TIME, "Closed")

    views = await instance_service.list_instances(db_session, tour_id, day, day + timedelta(days=1))
    cancelled = [v for v in views if v.status == "cancelled"]
    assert len(cancelled) == 1
    assert cancelled[0].date == day


@pytest.mark.asyncio
async def test_cancel_instance_locks_bookings_before_instance(db_session, catalog, customer, slot_date, monkeypatch):
    """Same order as cancel_booking and fail_payment: booking rows, then the instance row."""
    await booking_service.create_booking(db_session, catalog.tour_id, slot_date, SLOT_TIME, 2, customer)
    calls = []

    async def recording_lock_bookings(db, instance_id):
        calls.append("bookings")
        return await booking_state.lock_counted_bookings(db, instance_id)

    async def recording_lock_instance(db, instance_id):
        calls.append("instance")
        return await instance_service.lock_instance(db, instance_id)

    monkeypatch.setattr(payment_service, "lock_counted_bookings", recording_lock_bookings)
    monkeypatch.setattr(payment_service, "lock_instance", recording_lock_instance)

    result = await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Fog")
    assert result.affected_bookings == 1
    assert calls == ["bookings", "instance"]


@pytest.mark.asyncio
async def test_cancel_instance_retries_when_a_booking_lands_between_locks(
    db_session, catalog, customer, slot_date, monkeypatch
):
    booking = await booking_service.create_booking(db_session, catalog.tour_id, slot_date, SLOT_TIME, 2, customer)
    booking_id, instance_id = booking.id, booking.instance_id
    seen = []

    async def late_booking_once(db, instance_id):
        ids = await booking_state.counted_booking_ids(db, instance_id)
        seen.append(ids)
        return ids | {999_999} if len(seen) == 1 else ids

    monkeypatch.setattr(payment_service, "counted_booking_ids", late_booking_once)

    result = await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Fog")
    assert result.affected_bookings == 1
    assert len(seen) == 2
    assert (await refetch(db_session, TourInstance, instance_id)).booked_seats == 0
    assert (await refetch(db_session, Booking, booking_id)).state == ("cancelled", "void")


@pytest.mark.asyncio
async def test_cancel_instance_gives_up_when_bookings_keep_landing(
    db_session, catalog, customer, slot_date, monkeypatch
):
    booking = await booking_service.create_booking(db_session, catalog.tour_id, slot_date, SLOT_TIME, 2, customer)
    booking_id, instance_id = booking.id, booking.instance_id

    async def always_new_booking(db, instance_id):
        return await booking_state.counted_booking_ids(db, instance_id) | {999_999}

    monkeypatch.setattr(payment_service, "counted_booking_ids", always_new_booking)

    with pytest.raises(ConflictError):
        await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, SLOT_TIME, "Fog")

    instance = await refetch(db_session, TourInstance, instance_id)
    assert instance.status == "scheduled"
    assert instance.booked_seats == 2
    assert (await refetch(db_session, Booking, booking_id)).state == ("pending", "pending")
