"""
Admin endpoints: catalog, schedules, pricing overrides, instances and
booking resolution. The admin identity is the caller-supplied X-Admin-Id
header; authentication happens in front of this service.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.api.deps import get_admin_id, get_notifier, get_payment_gateway
from tourbooking.db.session import get_db
from tourbooking.infrastructure.payments import PaymentGateway
from tourbooking.schemas.booking import (
    AdminAction, BookingResponse, HistoryResponse, ManualBookingCreate, PassengerManifestUpdate,
    RefundRequest,
)
from tourbooking.schemas.ticket import (
    InstancePricingUpdate, PriceExceptionBatch, PricingRuleIn, RecipeItem, TicketCreate,
    TicketResponse,
)
from tourbooking.schemas.tour import (
    InstanceCancelRequest, InstanceCancelResponse, InstanceSlotRequest, InstanceView, ScheduleConfig,
    TourCreate, TourResponse,
)
from tourbooking.services import (
    booking_service, catalog_service, instance_service, payment_service, pricing_service, tour_service,
)
from tourbooking.services.cache_service import invalidate_availability_cache
from tourbooking.services.notification_service import Notifier

router = APIRouter(prefix="/admin", tags=["Admin"])


# Tours and schedules

@router.post("/tours", response_model=TourResponse, status_code=status.HTTP_201_CREATED)
async def create_tour_endpoint(tour_data: TourCreate, db: AsyncSession = Depends(get_db)):
    return await tour_service.create_tour(db, tour_data)


@router.put("/tours/{tour_id}/schedule", response_model=ScheduleConfig)
async def set_schedule_endpoint(tour_id: int, config: ScheduleConfig, db: AsyncSession = Depends(get_db)):
    await tour_service.set_schedule(db, tour_id, config)
    await invalidate_availability_cache(tour_id)
    return config


# Ticket library and base prices

@router.post("/tickets", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket_endpoint(ticket_data: TicketCreate, db: AsyncSession = Depends(get_db)):
    return await catalog_service.create_ticket(db, ticket_data)


@router.put("/tickets/{ticket_id}/recipe", response_model=list[RecipeItem])
async def set_recipe_endpoint(ticket_id: int, recipe: list[RecipeItem], db: AsyncSession = Depends(get_db)):
    items = await catalog_service.set_recipe(db, ticket_id, recipe)
    return [RecipeItem(atomic_ticket_id=i.atomic_ticket_id, quantity=i.quantity) for i in items]


@router.delete("/tickets/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket_endpoint(ticket_id: int, db: AsyncSession = Depends(get_db)):
    await catalog_service.delete_ticket(db, ticket_id)


@router.put("/tours/{tour_id}/pricing", response_model=list[PricingRuleIn])
async def set_tour_pricing_endpoint(
    tour_id: int, rules: list[PricingRuleIn], db: AsyncSession = Depends(get_db)
):
    pricing = await catalog_service.set_tour_pricing(db, tour_id, rules)
    return [PricingRuleIn(ticket_id=p.ticket_id, price=p.price) for p in pricing]


@router.post("/tours/{tour_id}/price-exceptions")
async def apply_price_exceptions_endpoint(
    tour_id: int, batch: PriceExceptionBatch, db: AsyncSession = Depends(get_db)
):
    """Macro override over a date range; materializes every scheduled slot in it."""
    written = await pricing_service.apply_price_exception_batch(
        db, tour_id, batch.ticket_id, batch.start_date, batch.end_date, batch.price
    )
    return {"slots_updated": written}


@router.put("/instances/{instance_id}/pricing")
async def set_instance_pricing_endpoint(
    instance_id: int,
    update: InstancePricingUpdate,
    admin_id: Optional[str] = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    prices = await pricing_service.set_instance_pricing(db, instance_id, update.prices, changed_by=admin_id)
    return {"instance_id": instance_id, "prices": {str(k): str(v) for k, v in prices.items()}}


# Instances

@router.get("/tours/{tour_id}/instances", response_model=list[InstanceView])
async def list_instances_endpoint(
    tour_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    status_filter: Optional[str] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
):
    return await instance_service.list_instances(db, tour_id, start_date, end_date, status_filter)


@router.post("/tours/{tour_id}/instances/cancel", response_model=InstanceCancelResponse)
async def cancel_instance_endpoint(
    tour_id: int,
    request: InstanceCancelRequest,
    admin_id: Optional[str] = Depends(get_admin_id),
    notifier: Notifier = Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.cancel_instance(
        db, tour_id, request.date, request.time, request.reason,
        changed_by=request.changed_by or admin_id, notifier=notifier,
    )


@router.post("/tours/{tour_id}/instances/reinstate", response_model=InstanceView)
async def reinstate_instance_endpoint(
    tour_id: int, request: InstanceSlotRequest, db: AsyncSession = Depends(get_db)
):
    instance = await instance_service.reinstate_instance(db, tour_id, request.date, request.time)
    await invalidate_availability_cache(tour_id)
    return InstanceView(
        id=instance.id,
        tour_id=instance.tour_id,
        date=instance.date,
        time=instance.time,
        status=instance.status,
        capacity=instance.capacity,
        booked_seats=instance.booked_seats,
        available_seats=instance.available_seats,
    )


# Bookings

@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def manual_booking_endpoint(
    data: ManualBookingCreate,
    admin_id: Optional[str] = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.create_manual_booking(
        db,
        data.tour_id,
        data.date,
        data.time,
        data.seats,
        data.customer,
        tickets=data.tickets,
        passengers=data.passengers,
        total_amount=data.total_amount,
        complimentary=data.complimentary,
        customer_notes=data.customer_notes,
        admin_notes=data.admin_notes,
        changed_by=data.changed_by or admin_id,
    )


@router.get("/bookings/triage", response_model=list[BookingResponse])
async def triage_endpoint(db: AsyncSession = Depends(get_db)):
    """Bookings waiting for an admin refund decision."""
    return await payment_service.list_triage_bookings(db)


@router.get("/bookings/{booking_id}/history", response_model=list[HistoryResponse])
async def history_endpoint(booking_id: int, db: AsyncSession = Depends(get_db)):
    return await booking_service.get_booking_history(db, booking_id)


@router.put("/bookings/{booking_id}/passengers", response_model=BookingResponse)
async def passengers_endpoint(
    booking_id: int,
    manifest: PassengerManifestUpdate,
    admin_id: Optional[str] = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.update_booking_passengers(db, booking_id, manifest.passengers, admin_id)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking_endpoint(
    booking_id: int,
    action: AdminAction,
    admin_id: Optional[str] = Depends(get_admin_id),
    notifier: Notifier = Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.cancel_booking(
        db, booking_id, action.reason, action.changed_by or admin_id, notifier
    )


@router.post("/bookings/{booking_id}/refund", response_model=BookingResponse)
async def refund_endpoint(
    booking_id: int,
    request: RefundRequest,
    admin_id: Optional[str] = Depends(get_admin_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.process_refund(
        db, gateway, booking_id, request.amount, request.reason,
        changed_by=request.changed_by or admin_id, notifier=notifier,
    )


@router.post("/bookings/{booking_id}/retry-refund", response_model=BookingResponse)
async def retry_refund_endpoint(
    booking_id: int,
    action: AdminAction,
    admin_id: Optional[str] = Depends(get_admin_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.retry_refund(
        db, gateway, booking_id, action.reason, action.changed_by or admin_id
    )


@router.post("/bookings/{booking_id}/mark-paid", response_model=BookingResponse)
async def mark_paid_endpoint(
    booking_id: int,
    action: AdminAction,
    admin_id: Optional[str] = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.mark_as_paid(db, booking_id, action.reason, action.changed_by or admin_id)


@router.post("/bookings/{booking_id}/manual-refund", response_model=BookingResponse)
async def manual_refund_endpoint(
    booking_id: int,
    action: AdminAction,
    admin_id: Optional[str] = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.resolve_triage_manual_refund(
        db, booking_id, action.reason, action.changed_by or admin_id
    )
