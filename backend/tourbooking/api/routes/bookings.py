"""
Public booking endpoints.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.api.deps import get_payment_gateway
from tourbooking.api.ratelimit import booking_rate_limit
from tourbooking.core.exceptions import ValidationError
from tourbooking.db.session import get_db
from tourbooking.infrastructure.payments import PaymentGateway
from tourbooking.schemas.booking import BookingCreate, BookingCreatedResponse, BookingResponse
from tourbooking.services.booking_service import create_booking_with_payment, get_booking_by_reference

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post(
    "/",
    response_model=BookingCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limit)],
)
async def create_booking_endpoint(
    booking_data: BookingCreate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Reserve seats and open a payment intent.

    The booking stays (pending, pending) and holds its seats until the
    processor reports the payment outcome by webhook.
    """
    if not booking_data.tickets:
        raise ValidationError("Select at least one ticket")

    booking, client_secret = await create_booking_with_payment(
        db,
        gateway,
        booking_data.tour_id,
        booking_data.date,
        booking_data.time,
        booking_data.seats,
        booking_data.customer,
        booking_data.tickets,
        passengers=booking_data.passengers,
        customer_notes=booking_data.customer_notes,
    )
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(booking),
        client_secret=client_secret,
    )


@router.get("/{reference}", response_model=BookingResponse)
async def get_booking_endpoint(reference: str, db: AsyncSession = Depends(get_db)):
    return await get_booking_by_reference(db, reference)
