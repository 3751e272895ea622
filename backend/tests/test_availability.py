"""
Tests for the availability calculator.
"""

from datetime import date, time, timedelta

import pytest
from sqlalchemy import func, select

from conftest import SLOT_TIME, make_tour
from tourbooking.core.exceptions import NotFoundError
from tourbooking.models.tour import Tour, TourInstance
from tourbooking.schemas.tour import TourCreate
from tourbooking.services import booking_service, payment_service, tour_service
from tourbooking.services.availability_service import get_available_slots

TODAY = date(2026, 10, 18)  # a Sunday


@pytest.mark.asyncio
async def test_virtual_slots_follow_schedule(db_session):
    # Mondays and Fridays at 10:00
    tour_id = await make_tour(db_session, capacity=8, days_of_week=[1, 5], times=["10:00"])
    slots = await get_available_slots(db_session, tour_id, TODAY, TODAY + timedelta(days=7), today=TODAY)

    assert [(s.date, s.time) for s in slots] == [
        (date(2026, 10, 19), time(10, 0)),
        (date(2026, 10, 23), time(10, 0)),
    ]
    assert all(s.tour_instance_id is None and s.available_seats == 8 for s in slots)

    instances = await db_session.scalar(select(func.count()).select_from(TourInstance))
    assert instances == 0


@pytest.mark.asyncio
async def test_window_clamps_range(db_session):
    tour_id = await make_tour(db_session, booking_window_days=2, times=["10:00"])
    slots = await get_available_slots(
        db_session, tour_id, TODAY - timedelta(days=5), TODAY + timedelta(days=10), today=TODAY
    )
    assert [s.date for s in slots] == [TODAY, TODAY + timedelta(days=1), TODAY + timedelta(days=2)]


@pytest.mark.asyncio
async def test_blackout_days_are_skipped(db_session):
    blackout = TODAY + timedelta(days=1)
    tour_id = await make_tour(
        db_session, times=["10:00"], blackout_ranges=[{"from": blackout.isoformat(), "to": blackout.isoformat()}]
    )
    slots = await get_available_slots(db_session, tour_id, TODAY, TODAY + timedelta(days=2), today=TODAY)
    assert blackout not in [s.date for s in slots]
    assert len(slots) == 2


@pytest.mark.asyncio
async def test_real_instances_override_virtual_defaults(db_session, catalog, customer, slot_date):
    await booking_service.create_booking(db_session, catalog.tour_id, slot_date, SLOT_TIME, 7, customer)
    await payment_service.cancel_instance(db_session, catalog.tour_id, slot_date, time(14, 0), "Crew short")

    slots = await get_available_slots(db_session, catalog.tour_id, slot_date, slot_date)
    assert len(slots) == 1
    assert slots[0].time == SLOT_TIME
    assert slots[0].tour_instance_id is not None
    assert slots[0].booked_seats == 7
    assert slots[0].available_seats == 3

    # Requesting more seats than remain hides the slot
    assert await get_available_slots(db_session, catalog.tour_id, slot_date, slot_date, seats_requested=4) == []


@pytest.mark.asyncio
async def test_inactive_tour_or_missing_schedule_lists_nothing(db_session):
    tour_id = await make_tour(db_session)
    tour = await db_session.get(Tour, tour_id)
    tour.active = False
    await db_session.commit()
    assert await get_available_slots(db_session, tour_id, TODAY, TODAY + timedelta(days=3), today=TODAY) == []

    unscheduled = await tour_service.create_tour(db_session, TourCreate(name="Night Walk"))
    assert await get_available_slots(db_session, unscheduled.id, TODAY, TODAY + timedelta(days=3), today=TODAY) == []


@pytest.mark.asyncio
async def test_missing_tour(db_session):
    with pytest.raises(NotFoundError):
        await get_available_slots(db_session, 4242, TODAY, TODAY)
