"""
Tour templates and the schedule rule store.
"""

from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import NotFoundError
from tourbooking.core.logging import get_logger
from tourbooking.db.session import atomic
from tourbooking.models.tour import Tour, TourSchedule
from tourbooking.schemas.tour import ScheduleConfig, TourCreate

logger = get_logger(__name__)


async def create_tour(db: AsyncSession, tour_data: TourCreate) -> Tour:
    async with atomic(db):
        tour = Tour(**tour_data.model_dump())
        db.add(tour)
        await db.flush()

    logger.info("tour_created", tour_id=tour.id, name=tour.name, capacity=tour.capacity)
    return tour


async def get_tour(db: AsyncSession, tour_id: int) -> Tour:
    tour = await db.get(Tour, tour_id)
    if tour is None:
        raise NotFoundError(f"Tour {tour_id} not found", details={"tour_id": tour_id})
    return tour


async def set_schedule(db: AsyncSession, tour_id: int, config: ScheduleConfig) -> TourSchedule:
    """
    Replace the tour's active schedule.
    Older schedules are deactivated in the same transaction, so a tour never
    has two active rule sets.
    """
    async with atomic(db):
        await get_tour(db, tour_id)
        await db.execute(
            update(TourSchedule)
            .where(TourSchedule.tour_id == tour_id, TourSchedule.active.is_(True))
            .values(active=False)
        )
        schedule = TourSchedule(
            tour_id=tour_id,
            schedule_config=config.model_dump(mode="json", by_alias=True),
            active=True,
        )
        db.add(schedule)
        await db.flush()

    logger.info("schedule_set", tour_id=tour_id, schedule_id=schedule.id)
    return schedule


async def get_active_schedule(db: AsyncSession, tour_id: int) -> Optional[ScheduleConfig]:
    result = await db.execute(
        select(TourSchedule.schedule_config)
        .where(TourSchedule.tour_id == tour_id, TourSchedule.active.is_(True))
        .order_by(TourSchedule.id.desc())
        .limit(1)
    )
    raw = result.scalar_one_or_none()
    if raw is None:
        return None
    return ScheduleConfig.model_validate(raw)


async def load_tour_rules(db: AsyncSession, tour_id: int) -> tuple[Tour, Optional[ScheduleConfig]]:
    """Tour plus its active schedule; the schedule is None when none is active."""
    tour = await get_tour(db, tour_id)
    return tour, await get_active_schedule(db, tour_id)
