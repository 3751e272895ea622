from tourbooking.models.tour import Tour, TourSchedule, TourInstance, InstanceStatus
from tourbooking.models.ticket import Ticket, TicketType, TicketRecipeItem, TourPricing, InstancePricing
from tourbooking.models.booking import (
    Booking, BookingHistory, Customer, Passenger, PaymentStatus, SeatStatus,
)

__all__ = [
    "Tour", "TourSchedule", "TourInstance", "InstanceStatus",
    "Ticket", "TicketType", "TicketRecipeItem", "TourPricing", "InstancePricing",
    "Booking", "BookingHistory", "Customer", "Passenger", "PaymentStatus", "SeatStatus",
]
