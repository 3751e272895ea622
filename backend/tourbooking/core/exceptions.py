"""
Error taxonomy for the booking engine.

Every error carries a machine-readable `code` and an HTTP `status_code` so the
API layer can render a specific rejection category without string matching.
Services raise these; the enclosing `atomic()` block rolls the transaction back.
"""

from typing import Any, Dict, Optional


class BookingEngineError(Exception):
    """Base exception for all booking engine errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}


class ValidationError(BookingEngineError):
    """Malformed input; nothing is written."""

    status_code = 400


class NotFoundError(BookingEngineError):
    """Missing tour, schedule, instance or booking."""

    status_code = 404


class CapacityError(BookingEngineError):
    """Not enough seats left on the instance at lock time."""

    status_code = 409


InsufficientCapacity = CapacityError


class ConflictError(BookingEngineError):
    status_code = 409


class TourNotAvailable(ConflictError):
    """The instance exists but is no longer scheduled."""


class ReferenceGenerationExhausted(ConflictError):
    pass


class InvalidStateTransition(ConflictError):
    """A booking is not in the state an operation requires."""

    def __init__(self, booking_id: int, current: tuple, requested: tuple) -> None:
        super().__init__(
            f"Booking {booking_id} cannot move from {current} to {requested}",
            details={
                "booking_id": booking_id,
                "seat_status": current[0],
                "payment_status": current[1],
            },
        )


class ExternalServiceError(BookingEngineError):
    """The payment processor call failed. No state was changed."""

    status_code = 502


class InvariantViolation(BookingEngineError):
    """Catalog data would break a structural rule (e.g. recipe of unknown tickets)."""

    status_code = 422


class RateLimitExceeded(BookingEngineError):
    """Too many public booking attempts from one client."""

    status_code = 429

    def __init__(self, retry_after_s: int) -> None:
        self.retry_after_s = retry_after_s
        super().__init__(
            "Too many booking attempts. Please try again later.",
            details={"retry_after": retry_after_s},
        )
