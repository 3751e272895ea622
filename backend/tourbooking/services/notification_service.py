"""
Customer notifications.

Sent only after the transaction that caused them has committed, as
background tasks: a slow or failing notifier never blocks or rolls back a
booking. Failures are logged.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.logging import get_logger
from tourbooking.models.booking import Booking, Customer
from tourbooking.models.tour import Tour, TourInstance

logger = get_logger(__name__)

_pending: set[asyncio.Task] = set()


@dataclass(frozen=True)
class BookingContext:
    booking: Booking
    customer: Customer
    instance: TourInstance
    tour: Tour


class Notifier(ABC):
    @abstractmethod
    async def booking_confirmed(self, ctx: BookingContext) -> None:
        pass

    @abstractmethod
    async def booking_cancelled(self, ctx: BookingContext, reason: Optional[str]) -> None:
        pass


class LoggingNotifier(Notifier):
    """Default notifier: records what would be sent."""

    async def booking_confirmed(self, ctx: BookingContext) -> None:
        logger.info(
            "notify_booking_confirmed",
            booking_reference=ctx.booking.booking_reference,
            email=ctx.customer.email,
            tour=ctx.tour.name,
            date=str(ctx.instance.date),
            time=str(ctx.instance.time),
            seats=ctx.booking.seats,
        )

    async def booking_cancelled(self, ctx: BookingContext, reason: Optional[str]) -> None:
        logger.info(
            "notify_booking_cancelled",
            booking_reference=ctx.booking.booking_reference,
            email=ctx.customer.email,
            tour=ctx.tour.name,
            date=str(ctx.instance.date),
            time=str(ctx.instance.time),
            reason=reason,
        )


async def load_context(db: AsyncSession, booking: Booking) -> BookingContext:
    """Load inside the transaction so nothing is read after commit."""
    customer = await db.get(Customer, booking.customer_id)
    instance = await db.get(TourInstance, booking.instance_id)
    tour = await db.get(Tour, instance.tour_id)
    return BookingContext(booking=booking, customer=customer, instance=instance, tour=tour)


async def _deliver(kind: str, coro, booking_reference: str) -> None:
    try:
        await coro
    except Exception as e:
        logger.error("notification_failed", kind=kind, booking_reference=booking_reference, error=str(e))


def dispatch(kind: str, coro, booking_reference: str) -> asyncio.Task:
    """Schedule a notifier call without awaiting it."""
    task = asyncio.create_task(_deliver(kind, coro, booking_reference))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


def notify_confirmed(notifier: Notifier, ctx: BookingContext) -> None:
    dispatch("confirmed", notifier.booking_confirmed(ctx), ctx.booking.booking_reference)


def notify_cancelled(notifier: Notifier, ctx: BookingContext, reason: Optional[str]) -> None:
    dispatch("cancelled", notifier.booking_cancelled(ctx, reason), ctx.booking.booking_reference)


async def drain_notifications() -> None:
    """Wait for in-flight notifications (shutdown and tests)."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
