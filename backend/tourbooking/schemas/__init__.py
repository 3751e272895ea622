from tourbooking.schemas.tour import (
    AvailableSlot, BlackoutRange, InstanceView, ScheduleConfig, TourCreate, TourResponse,
)
from tourbooking.schemas.ticket import (
    PriceQuote, PricingRuleIn, RecipeItem, TicketCreate, TicketResponse, TicketSelection,
)
from tourbooking.schemas.booking import (
    BookingCreate, BookingResponse, CustomerIn, ManualBookingCreate, PassengerIn, RefundRequest,
)

__all__ = [
    "AvailableSlot", "BlackoutRange", "InstanceView", "ScheduleConfig", "TourCreate", "TourResponse",
    "PriceQuote", "PricingRuleIn", "RecipeItem", "TicketCreate", "TicketResponse", "TicketSelection",
    "BookingCreate", "BookingResponse", "CustomerIn", "ManualBookingCreate", "PassengerIn",
    "RefundRequest",
]
