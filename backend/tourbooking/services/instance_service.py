"""
Just-in-time instance materialization.

CONCURRENCY STRATEGY: Conditional Insert + Pessimistic Row Lock
===============================================================

Problem:
  A schedule slot has no row until someone books, prices or cancels it.
  Two requests for the same empty slot can both decide to create it, and two
  bookers of the last seats can both read the same free capacity.

Solution:
  1. INSERT ... ON CONFLICT (tour_id, date, time) DO NOTHING
     The unique key makes creation idempotent: a loser of the race blocks on
     the winner's uncommitted row and then inserts nothing.
  2. SELECT id in the same transaction, which sees whichever row won.
  3. Writers then take SELECT ... FOR UPDATE on that row. All bookers of one
     slot serialize there and re-read capacity after acquiring the lock.

  Both steps take the caller's session, so creation, locking and the seat
  write commit or roll back together.
"""

from datetime import date, time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import NotFoundError, ValidationError
from tourbooking.core.logging import get_logger
from tourbooking.db.session import atomic, dialect_name
from tourbooking.models.tour import InstanceStatus, TourInstance
from tourbooking.schemas.tour import InstanceView
from tourbooking.services import schedule as rules
from tourbooking.services.tour_service import load_tour_rules

logger = get_logger(__name__)


def upsert_statement(db: AsyncSession, model):
    """Dialect-specific INSERT that supports ON CONFLICT clauses."""
    if dialect_name(db) == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _slot_time(value: time) -> time:
    return value.replace(second=0, microsecond=0, tzinfo=None)


async def find_or_create_instance(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
    default_capacity: int,
) -> int:
    """
    Return the id of the (tour, date, time) instance, creating it if needed.
    Runs inside the caller's transaction and does not commit.
    """
    slot_time = _slot_time(slot_time)
    stmt = (
        upsert_statement(db, TourInstance)
        .values(
            tour_id=tour_id,
            date=slot_date,
            time=slot_time,
            capacity=default_capacity,
            booked_seats=0,
            status=InstanceStatus.SCHEDULED.value,
        )
        .on_conflict_do_nothing(index_elements=["tour_id", "date", "time"])
    )
    inserted = await db.execute(stmt)

    result = await db.execute(
        select(TourInstance.id).where(
            TourInstance.tour_id == tour_id,
            TourInstance.date == slot_date,
            TourInstance.time == slot_time,
        )
    )
    instance_id = result.scalar_one()

    if inserted.rowcount:
        logger.info(
            "instance_materialized",
            instance_id=instance_id,
            tour_id=tour_id,
            date=str(slot_date),
            time=str(slot_time),
        )
    return instance_id


async def lock_instance(db: AsyncSession, instance_id: int) -> TourInstance:
    """SELECT ... FOR UPDATE, overwriting any stale copy in the identity map."""
    result = await db.execute(
        select(TourInstance)
        .where(TourInstance.id == instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    instance = result.scalar_one_or_none()
    if instance is None:
        raise NotFoundError(f"Tour instance {instance_id} not found", details={"instance_id": instance_id})
    return instance


async def get_instance(db: AsyncSession, instance_id: int) -> TourInstance:
    instance = await db.get(TourInstance, instance_id)
    if instance is None:
        raise NotFoundError(f"Tour instance {instance_id} not found", details={"instance_id": instance_id})
    return instance


async def find_instance(
    db: AsyncSession, tour_id: int, slot_date: date, slot_time: time
) -> Optional[TourInstance]:
    """Read-only lookup; never materializes."""
    result = await db.execute(
        select(TourInstance).where(
            TourInstance.tour_id == tour_id,
            TourInstance.date == slot_date,
            TourInstance.time == _slot_time(slot_time),
        )
    )
    return result.scalar_one_or_none()


async def reinstate_instance(
    db: AsyncSession, tour_id: int, slot_date: date, slot_time: time
) -> TourInstance:
    """
    Put a cancelled slot back on sale. Bookings released by the cancellation
    stay released; they are resolved one by one from the triage queue.
    """
    async with atomic(db):
        instance = await find_instance(db, tour_id, slot_date, slot_time)
        if instance is None:
            raise NotFoundError("Tour instance not found", details={"tour_id": tour_id})
        instance = await lock_instance(db, instance.id)
        if instance.status != InstanceStatus.CANCELLED.value:
            raise ValidationError(f"Tour instance {instance.id} is not cancelled")

        instance.status = InstanceStatus.SCHEDULED.value
        instance.cancellation_reason = None
        instance.cancelled_at = None
        instance.cancelled_by = None

    logger.info("instance_reinstated", instance_id=instance.id, tour_id=tour_id)
    return instance


async def list_instances(
    db: AsyncSession,
    tour_id: int,
    start_date: date,
    end_date: date,
    status: Optional[str] = None,
) -> list[InstanceView]:
    """
    Admin view of every slot in range: real rows merged onto the virtual
    schedule. Booking window and blackouts are ignored so that cancelled rows
    on blacked-out days remain visible.
    """
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date")

    tour, config = await load_tour_rules(db, tour_id)

    result = await db.execute(
        select(TourInstance).where(
            TourInstance.tour_id == tour_id,
            TourInstance.date >= start_date,
            TourInstance.date <= end_date,
        )
    )
    real = {(i.date, i.time): i for i in result.scalars().all()}

    keys = set(real)
    if config is not None:
        times = config.slot_times()
        for day in rules.iter_days(start_date, end_date):
            if rules.weekday_index(day) in config.days_of_week:
                keys.update((day, t) for t in times)

    views = []
    for key in sorted(keys):
        instance = real.get(key)
        if instance is not None:
            view = InstanceView(
                id=instance.id,
                tour_id=tour_id,
                date=instance.date,
                time=instance.time,
                status=instance.status,
                capacity=instance.capacity,
                booked_seats=instance.booked_seats,
                available_seats=instance.available_seats,
                cancellation_reason=instance.cancellation_reason,
            )
        else:
            view = InstanceView(
                id=None,
                tour_id=tour_id,
                date=key[0],
                time=key[1],
                status=InstanceStatus.SCHEDULED.value,
                capacity=tour.capacity,
                booked_seats=0,
                available_seats=tour.capacity,
            )
        if status and view.status != status:
            continue
        views.append(view)
    return views
