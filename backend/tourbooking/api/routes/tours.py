"""
Public tour endpoints: availability (Redis-cached) and per-slot prices.
"""

from datetime import date, time

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.logging import get_logger
from tourbooking.db.session import get_db
from tourbooking.schemas.ticket import PriceQuote
from tourbooking.schemas.tour import AvailableSlot
from tourbooking.services import schedule as rules
from tourbooking.services.availability_service import get_available_slots
from tourbooking.services.cache_service import get_cached_availability, set_cached_availability
from tourbooking.services.pricing_service import resolve_instance_price

logger = get_logger(__name__)
router = APIRouter(prefix="/tours", tags=["Tours"])


@router.get("/{tour_id}/availability", response_model=list[AvailableSlot])
async def availability_endpoint(
    tour_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    seats: int = Query(1, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """
    Bookable slots in range. Results are cached in Redis per tour and
    invalidated on every seat change for that tour.
    """
    today = rules.utc_today()
    cached = await get_cached_availability(tour_id, start_date, end_date, seats, today)
    if cached is not None:
        logger.info("availability_cache_hit", tour_id=tour_id)
        return [AvailableSlot(**slot) for slot in cached]

    slots = await get_available_slots(db, tour_id, start_date, end_date, seats, today=today)
    await set_cached_availability(
        tour_id, start_date, end_date, seats, today,
        [slot.model_dump(mode="json") for slot in slots],
    )
    return slots


@router.get("/{tour_id}/pricing", response_model=list[PriceQuote])
async def pricing_endpoint(
    tour_id: int,
    slot_date: date = Query(..., alias="date"),
    slot_time: time = Query(..., alias="time"),
    db: AsyncSession = Depends(get_db),
):
    """Final ticket prices for one departure."""
    return await resolve_instance_price(db, tour_id, slot_date, slot_time)
