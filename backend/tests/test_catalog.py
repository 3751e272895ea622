"""
Tests for the ticket library, recipes and tier-1 pricing rules.
"""

from decimal import Decimal

import pytest

from tourbooking.core.exceptions import ConflictError, InvariantViolation, NotFoundError, ValidationError
from tourbooking.models.ticket import TicketType
from tourbooking.schemas.ticket import PricingRuleIn, RecipeItem, TicketCreate
from tourbooking.services import catalog_service


@pytest.mark.asyncio
async def test_recipe_overwrite(db_session, catalog):
    items = await catalog_service.set_recipe(
        db_session, catalog.family_id, [RecipeItem(atomic_ticket_id=catalog.adult_id, quantity=3)]
    )
    assert [(i.atomic_ticket_id, i.quantity) for i in items] == [(catalog.adult_id, 3)]

    recipe = await catalog_service.get_recipe(db_session, catalog.family_id)
    assert [(i.atomic_ticket_id, i.quantity) for i in recipe] == [(catalog.adult_id, 3)]


@pytest.mark.asyncio
async def test_recipe_rejects_non_atomic_component(db_session, catalog):
    other = await catalog_service.create_ticket(db_session, TicketCreate(name="Duo", type=TicketType.COMBINED))
    with pytest.raises(InvariantViolation):
        await catalog_service.set_recipe(
            db_session, other.id, [RecipeItem(atomic_ticket_id=catalog.family_id, quantity=1)]
        )


@pytest.mark.asyncio
async def test_recipe_rejects_unknown_component(db_session, catalog):
    with pytest.raises(InvariantViolation):
        await catalog_service.set_recipe(db_session, catalog.family_id, [RecipeItem(atomic_ticket_id=9999, quantity=1)])


@pytest.mark.asyncio
async def test_recipe_only_for_combined_tickets(db_session, catalog):
    with pytest.raises(ValidationError):
        await catalog_service.set_recipe(
            db_session, catalog.adult_id, [RecipeItem(atomic_ticket_id=catalog.child_id, quantity=1)]
        )


@pytest.mark.asyncio
async def test_delete_referenced_atomic_ticket_is_refused(db_session, catalog):
    with pytest.raises(ConflictError) as exc_info:
        await catalog_service.delete_ticket(db_session, catalog.child_id)
    assert exc_info.value.details["recipes"] == 1
    assert exc_info.value.details["pricing_rules"] == 1


@pytest.mark.asyncio
async def test_delete_unused_ticket(db_session, catalog):
    spare = await catalog_service.create_ticket(db_session, TicketCreate(name="Senior"))
    await catalog_service.delete_ticket(db_session, spare.id)
    with pytest.raises(NotFoundError):
        await catalog_service.get_ticket(db_session, spare.id)


@pytest.mark.asyncio
async def test_tour_pricing_drops_non_positive_prices(db_session, catalog):
    pricing = await catalog_service.set_tour_pricing(
        db_session,
        catalog.tour_id,
        [
            PricingRuleIn(ticket_id=catalog.adult_id, price=Decimal("55.00")),
            PricingRuleIn(ticket_id=catalog.child_id, price=Decimal("0")),
        ],
    )
    assert [(p.ticket_id, p.price) for p in pricing] == [(catalog.adult_id, Decimal("55.00"))]

    stored = await catalog_service.get_tour_pricing(db_session, catalog.tour_id)
    assert [p.ticket_id for p in stored] == [catalog.adult_id]


@pytest.mark.asyncio
async def test_tour_pricing_unknown_ticket(db_session, catalog):
    with pytest.raises(NotFoundError):
        await catalog_service.set_tour_pricing(
            db_session, catalog.tour_id, [PricingRuleIn(ticket_id=9999, price=Decimal("10"))]
        )
