"""
Pydantic schemas for the ticket library, pricing rules and price quotes.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from tourbooking.models.ticket import TicketType


class TicketCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TicketType = TicketType.ATOMIC


class TicketResponse(BaseModel):
    id: int
    name: str
    type: str

    model_config = {"from_attributes": True}


class RecipeItem(BaseModel):
    atomic_ticket_id: int
    quantity: int = Field(..., gt=0)


class PricingRuleIn(BaseModel):
    ticket_id: int
    price: Decimal = Field(..., max_digits=10, decimal_places=2)


class PriceQuote(BaseModel):
    ticket_id: int
    name: str
    type: str
    price: Decimal
    recipe: Optional[list[RecipeItem]] = None


class TicketSelection(BaseModel):
    ticket_id: int
    quantity: int = Field(..., gt=0, le=100)


class PriceExceptionBatch(BaseModel):
    ticket_id: int
    start_date: date
    end_date: date
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class InstancePricingUpdate(BaseModel):
    prices: dict[int, Decimal] = Field(..., min_length=1)
