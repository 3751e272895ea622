"""
Ticket library: definitions, combined-ticket recipes and per-tour base prices.

Structural rules enforced here (and backed by RESTRICT foreign keys):
- a recipe may only reference existing atomic tickets
- an atomic ticket cannot be deleted while a recipe or pricing rule uses it
"""

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.core.exceptions import ConflictError, InvariantViolation, NotFoundError, ValidationError
from tourbooking.core.logging import get_logger
from tourbooking.db.session import atomic
from tourbooking.models.ticket import (
    InstancePricing, Ticket, TicketRecipeItem, TicketType, TourPricing,
)
from tourbooking.schemas.ticket import PricingRuleIn, RecipeItem, TicketCreate
from tourbooking.services.tour_service import get_tour

logger = get_logger(__name__)


async def create_ticket(db: AsyncSession, ticket_data: TicketCreate) -> Ticket:
    async with atomic(db):
        ticket = Ticket(name=ticket_data.name, type=ticket_data.type.value)
        db.add(ticket)
        await db.flush()

    logger.info("ticket_created", ticket_id=ticket.id, type=ticket.type)
    return ticket


async def get_ticket(db: AsyncSession, ticket_id: int) -> Ticket:
    ticket = await db.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFoundError(f"Ticket {ticket_id} not found", details={"ticket_id": ticket_id})
    return ticket


async def get_recipe(db: AsyncSession, combined_ticket_id: int) -> list[TicketRecipeItem]:
    result = await db.execute(
        select(TicketRecipeItem)
        .where(TicketRecipeItem.combined_ticket_id == combined_ticket_id)
        .order_by(TicketRecipeItem.atomic_ticket_id)
    )
    return list(result.scalars().all())


async def set_recipe(
    db: AsyncSession,
    combined_ticket_id: int,
    recipe: list[RecipeItem],
) -> list[TicketRecipeItem]:
    """Full overwrite of a combined ticket's recipe."""
    async with atomic(db):
        ticket = await get_ticket(db, combined_ticket_id)
        if ticket.type != TicketType.COMBINED.value:
            raise ValidationError(f"Ticket {combined_ticket_id} is not a combined ticket")
        if not recipe:
            raise ValidationError("A combined ticket needs at least one component")

        component_ids = {item.atomic_ticket_id for item in recipe}
        if len(component_ids) != len(recipe):
            raise ValidationError("Recipe lists the same atomic ticket twice")

        result = await db.execute(select(Ticket).where(Ticket.id.in_(component_ids)))
        components = {t.id: t for t in result.scalars().all()}
        unknown = sorted(component_ids - components.keys())
        if unknown:
            raise InvariantViolation(
                "Recipe references unknown tickets", details={"ticket_ids": unknown}
            )
        not_atomic = sorted(t.id for t in components.values() if t.type != TicketType.ATOMIC.value)
        if not_atomic:
            raise InvariantViolation(
                "Recipe components must be atomic tickets", details={"ticket_ids": not_atomic}
            )

        await db.execute(
            delete(TicketRecipeItem).where(TicketRecipeItem.combined_ticket_id == combined_ticket_id)
        )
        items = [
            TicketRecipeItem(
                combined_ticket_id=combined_ticket_id,
                atomic_ticket_id=item.atomic_ticket_id,
                quantity=item.quantity,
            )
            for item in recipe
        ]
        db.add_all(items)
        await db.flush()

    logger.info("recipe_set", ticket_id=combined_ticket_id, components=len(items))
    return items


async def delete_ticket(db: AsyncSession, ticket_id: int) -> None:
    async with atomic(db):
        await get_ticket(db, ticket_id)

        recipe_refs = await db.scalar(
            select(func.count())
            .select_from(TicketRecipeItem)
            .where(TicketRecipeItem.atomic_ticket_id == ticket_id)
        )
        pricing_refs = await db.scalar(
            select(func.count())
            .select_from(TourPricing)
            .where(TourPricing.ticket_id == ticket_id)
        )
        exception_refs = await db.scalar(
            select(func.count())
            .select_from(InstancePricing)
            .where(InstancePricing.ticket_id == ticket_id)
        )
        if recipe_refs or pricing_refs or exception_refs:
            raise ConflictError(
                f"Ticket {ticket_id} is still in use",
                details={
                    "recipes": recipe_refs,
                    "pricing_rules": pricing_refs,
                    "price_exceptions": exception_refs,
                },
            )

        await db.execute(
            delete(TicketRecipeItem).where(TicketRecipeItem.combined_ticket_id == ticket_id)
        )
        await db.execute(delete(Ticket).where(Ticket.id == ticket_id))

    logger.info("ticket_deleted", ticket_id=ticket_id)


async def get_tour_pricing(db: AsyncSession, tour_id: int) -> list[TourPricing]:
    result = await db.execute(
        select(TourPricing).where(TourPricing.tour_id == tour_id).order_by(TourPricing.ticket_id)
    )
    return list(result.scalars().all())


async def set_tour_pricing(
    db: AsyncSession,
    tour_id: int,
    rules: list[PricingRuleIn],
) -> list[TourPricing]:
    """
    Full overwrite of a tour's tier-1 prices.
    Rules with a zero or negative price are dropped: they make the ticket
    unsellable on this tour rather than free.
    """
    async with atomic(db):
        await get_tour(db, tour_id)
        kept = [rule for rule in rules if rule.price > 0]

        ticket_ids = {rule.ticket_id for rule in kept}
        if ticket_ids:
            result = await db.execute(select(Ticket.id).where(Ticket.id.in_(ticket_ids)))
            missing = sorted(ticket_ids - set(result.scalars().all()))
            if missing:
                raise NotFoundError("Pricing references unknown tickets", details={"ticket_ids": missing})

        await db.execute(delete(TourPricing).where(TourPricing.tour_id == tour_id))
        pricing = [TourPricing(tour_id=tour_id, ticket_id=rule.ticket_id, price=rule.price) for rule in kept]
        db.add_all(pricing)
        await db.flush()

    logger.info("tour_pricing_set", tour_id=tour_id, rules=len(pricing), dropped=len(rules) - len(kept))
    return pricing

