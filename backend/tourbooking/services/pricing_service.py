"""
Three-tier price resolution.

  Tier 1  tour_pricing           base price per (tour, ticket)
  Tier 2  tour_instance_pricing  batch ("macro") override over a date range
  Tier 3  tour_instance_pricing  single ("micro") override on one instance

Tiers 2 and 3 share one row keyed by (instance, ticket), so whichever was
written last wins. Only tickets with a tier-1 rule are sellable on a tour.
"""

from datetime import date, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import NotFoundError, ValidationError
from tourbooking.core.logging import get_logger
from tourbooking.db.base import utcnow
from tourbooking.db.session import atomic
from tourbooking.models.ticket import InstancePricing, Ticket, TicketRecipeItem, TicketType, TourPricing
from tourbooking.schemas.ticket import PriceQuote, RecipeItem, TicketSelection
from tourbooking.services import schedule as rules
from tourbooking.services.instance_service import (
    find_instance, find_or_create_instance, get_instance, upsert_statement,
)
from tourbooking.services.tour_service import load_tour_rules

logger = get_logger(__name__)


async def _exception_prices(db: AsyncSession, instance_id: int) -> dict[int, Decimal]:
    result = await db.execute(
        select(InstancePricing.ticket_id, InstancePricing.price).where(
            InstancePricing.instance_id == instance_id
        )
    )
    return {ticket_id: price for ticket_id, price in result.all()}


async def _recipes(db: AsyncSession, ticket_ids: list[int]) -> dict[int, list[RecipeItem]]:
    if not ticket_ids:
        return {}
    result = await db.execute(
        select(TicketRecipeItem)
        .where(TicketRecipeItem.combined_ticket_id.in_(ticket_ids))
        .order_by(TicketRecipeItem.atomic_ticket_id)
    )
    recipes: dict[int, list[RecipeItem]] = {}
    for item in result.scalars().all():
        recipes.setdefault(item.combined_ticket_id, []).append(
            RecipeItem(atomic_ticket_id=item.atomic_ticket_id, quantity=item.quantity)
        )
    return recipes


async def resolve_instance_price(
    db: AsyncSession,
    tour_id: int,
    slot_date: date,
    slot_time: time,
) -> list[PriceQuote]:
    """
    Final per-ticket prices for one slot: instance override if present,
    otherwise the tour's base price. Never materializes the instance.
    """
    result = await db.execute(
        select(TourPricing.ticket_id, TourPricing.price, Ticket.name, Ticket.type)
        .join(Ticket, Ticket.id == TourPricing.ticket_id)
        .where(TourPricing.tour_id == tour_id)
        .order_by(Ticket.type, Ticket.name)
    )
    base_rules = result.all()
    if not base_rules:
        logger.warning("tour_has_no_pricing_rules", tour_id=tour_id)
        return []

    instance = await find_instance(db, tour_id, slot_date, slot_time)
    overrides = await _exception_prices(db, instance.id) if instance is not None else {}

    combined_ids = [ticket_id for ticket_id, _, _, kind in base_rules if kind == TicketType.COMBINED.value]
    recipes = await _recipes(db, combined_ids)

    return [
        PriceQuote(
            ticket_id=ticket_id,
            name=name,
            type=kind,
            price=overrides.get(ticket_id, price),
            recipe=recipes.get(ticket_id, []) if kind == TicketType.COMBINED.value else None,
        )
        for ticket_id, price, name, kind in base_rules
    ]


def seats_per_unit(quote: PriceQuote) -> int:
    if quote.type == TicketType.COMBINED.value:
        return sum(item.quantity for item in quote.recipe or [])
    return 1


def total_selected_seats(selection: list[TicketSelection], quotes: list[PriceQuote]) -> int:
    """Seats consumed by a ticket selection; a combined ticket takes its whole recipe per unit."""
    by_id = {quote.ticket_id: quote for quote in quotes}
    return sum(seats_per_unit(by_id[item.ticket_id]) * item.quantity for item in selection)


def price_selection(selection: list[TicketSelection], quotes: list[PriceQuote]) -> tuple[int, Decimal]:
    """(seats, total amount) for a selection, rejecting tickets not sold on this tour."""
    if not selection:
        raise ValidationError("Select at least one ticket")

    by_id = {quote.ticket_id: quote for quote in quotes}
    unsellable = sorted({item.ticket_id for item in selection} - by_id.keys())
    if unsellable:
        raise ValidationError(
            "Tickets are not sold for this tour", details={"ticket_ids": unsellable}
        )

    total = sum((by_id[item.ticket_id].price * item.quantity for item in selection), Decimal("0"))
    return total_selected_seats(selection, quotes), total.quantize(Decimal("0.01"))


async def _upsert_exception(db: AsyncSession, instance_id: int, ticket_id: int, price: Decimal) -> None:
    stmt = upsert_statement(db, InstancePricing).values(
        instance_id=instance_id,
        ticket_id=ticket_id,
        price=price,
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["instance_id", "ticket_id"],
        set_={"price": stmt.excluded.price, "updated_at": stmt.excluded.updated_at},
    )
    await db.execute(stmt)


async def apply_price_exception_batch(
    db: AsyncSession,
    tour_id: int,
    ticket_id: int,
    start_date: date,
    end_date: date,
    price: Decimal,
) -> int:
    """
    Macro override: one exception row for every scheduled slot in range.
    This is the only path that materializes instances purely for pricing.
    The whole range is one transaction; returns the number of slots written.
    """
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date")
    if price < 0:
        raise ValidationError("price must not be negative")

    async with atomic(db):
        tour, config = await load_tour_rules(db, tour_id)
        if config is None:
            raise NotFoundError(f"Tour {tour_id} has no active schedule", details={"tour_id": tour_id})

        has_rule = await db.scalar(
            select(TourPricing.id).where(TourPricing.tour_id == tour_id, TourPricing.ticket_id == ticket_id)
        )
        if has_rule is None:
            raise ValidationError(
                f"Ticket {ticket_id} has no base price on tour {tour_id}",
                details={"tour_id": tour_id, "ticket_id": ticket_id},
            )

        written = 0
        for slot_date, slot_time in rules.iter_slots(config, start_date, end_date):
            instance_id = await find_or_create_instance(db, tour_id, slot_date, slot_time, tour.capacity)
            await _upsert_exception(db, instance_id, ticket_id, price)
            written += 1

    logger.info(
        "price_exception_batch_applied",
        tour_id=tour_id,
        ticket_id=ticket_id,
        start_date=str(start_date),
        end_date=str(end_date),
        price=str(price),
        slots=written,
    )
    return written


async def set_instance_pricing(
    db: AsyncSession,
    instance_id: int,
    prices: dict[int, Decimal],
    changed_by: Optional[str] = None,
) -> dict[int, Decimal]:
    """Micro override on one existing instance."""
    if any(price < 0 for price in prices.values()):
        raise ValidationError("price must not be negative")

    async with atomic(db):
        instance = await get_instance(db, instance_id)
        result = await db.execute(
            select(TourPricing.ticket_id).where(
                TourPricing.tour_id == instance.tour_id,
                TourPricing.ticket_id.in_(prices.keys()),
            )
        )
        unpriced = sorted(set(prices) - set(result.scalars().all()))
        if unpriced:
            raise ValidationError(
                "Tickets have no base price on this tour", details={"ticket_ids": unpriced}
            )
        for ticket_id, price in prices.items():
            await _upsert_exception(db, instance_id, ticket_id, price)

    logger.info(
        "instance_pricing_set",
        instance_id=instance_id,
        tickets=sorted(prices),
        changed_by=changed_by,
    )
    return prices
