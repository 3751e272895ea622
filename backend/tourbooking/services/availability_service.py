"""
Bookable slot listing.

Read-only: virtual slots are computed from the schedule and merged with
whatever instance rows already exist. Nothing is materialized here.
"""

from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import ValidationError
from tourbooking.core.logging import get_logger
from tourbooking.models.tour import InstanceStatus, TourInstance
from tourbooking.schemas.tour import AvailableSlot
from tourbooking.services import schedule as rules
from tourbooking.services.tour_service import load_tour_rules

logger = get_logger(__name__)


async def get_available_slots(
    db: AsyncSession,
    tour_id: int,
    start_date: date,
    end_date: date,
    seats_requested: int = 1,
    today: Optional[date] = None,
) -> list[AvailableSlot]:
    """
    Chronological list of slots in [start_date, end_date] that are inside the
    booking window, not blacked out, scheduled, and have at least
    `seats_requested` free seats.
    """
    if seats_requested < 1:
        raise ValidationError("seats_requested must be at least 1")

    tour, config = await load_tour_rules(db, tour_id)
    if not tour.active:
        logger.warning("availability_tour_inactive", tour_id=tour_id)
        return []
    if config is None:
        logger.warning("availability_no_active_schedule", tour_id=tour_id)
        return []

    today = today or rules.utc_today()
    window_start = max(today, start_date)
    window_end = min(today + timedelta(days=tour.booking_window_days), end_date)
    if window_end < window_start:
        return []

    # One range query; slots are then matched in memory
    result = await db.execute(
        select(TourInstance).where(
            TourInstance.tour_id == tour_id,
            TourInstance.date >= window_start,
            TourInstance.date <= window_end,
        )
    )
    instances = {(i.date, i.time): i for i in result.scalars().all()}

    slots = []
    for slot_date, slot_time in rules.iter_slots(config, window_start, window_end):
        instance = instances.get((slot_date, slot_time))
        if instance is not None:
            if instance.status != InstanceStatus.SCHEDULED.value:
                continue
            slot = AvailableSlot(
                tour_instance_id=instance.id,
                tour_id=tour_id,
                date=slot_date,
                time=slot_time,
                capacity=instance.capacity,
                booked_seats=instance.booked_seats,
                available_seats=instance.available_seats,
            )
        else:
            slot = AvailableSlot(
                tour_instance_id=None,
                tour_id=tour_id,
                date=slot_date,
                time=slot_time,
                capacity=tour.capacity,
                booked_seats=0,
                available_seats=tour.capacity,
            )
        if slot.available_seats >= seats_requested:
            slots.append(slot)

    logger.debug(
        "availability_computed",
        tour_id=tour_id,
        start_date=str(window_start),
        end_date=str(window_end),
        slots=len(slots),
    )
    return slots
