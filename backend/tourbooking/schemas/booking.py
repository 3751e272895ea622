"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from tourbooking.schemas.ticket import TicketSelection


class CustomerIn(BaseModel):
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=50)


class PassengerIn(BaseModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    ticket_type: Optional[str] = Field(None, max_length=100)


class BookingCreate(BaseModel):
    tour_id: int
    date: date
    time: time
    seats: int = Field(..., gt=0, le=100)
    customer: CustomerIn
    tickets: Optional[list[TicketSelection]] = None
    passengers: list[PassengerIn] = Field(default_factory=list)
    customer_notes: Optional[str] = Field(None, max_length=2000)


class ManualBookingCreate(BookingCreate):
    total_amount: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    complimentary: bool = False
    admin_notes: Optional[str] = Field(None, max_length=2000)
    changed_by: Optional[str] = None


class PassengerResponse(BaseModel):
    first_name: Optional[str]
    last_name: Optional[str]
    ticket_type: Optional[str]

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: int
    booking_reference: str
    instance_id: int
    customer_id: int
    seats: int
    total_amount: Decimal
    seat_status: str
    payment_status: str
    payment_intent_id: Optional[str]
    refund_amount: Optional[Decimal]
    cancellation_reason: Optional[str]
    passengers: list[PassengerResponse] = []
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    client_secret: Optional[str]


class HistoryResponse(BaseModel):
    axis: str
    previous_status: Optional[str]
    new_status: str
    changed_by: Optional[str]
    reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class AdminAction(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    changed_by: Optional[str] = None


class RefundRequest(AdminAction):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)


class PassengerManifestUpdate(BaseModel):
    passengers: list[PassengerIn]
