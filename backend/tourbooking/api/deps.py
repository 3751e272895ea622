"""
Shared FastAPI dependencies. Tests replace these through
`app.dependency_overrides`.
"""

from typing import Optional

from fastapi import Header

from tourbooking.infrastructure.payments import PaymentGateway, StripeGateway
from tourbooking.services.notification_service import LoggingNotifier, Notifier

_notifier = LoggingNotifier()


def get_payment_gateway() -> PaymentGateway:
    return StripeGateway()


def get_notifier() -> Notifier:
    return _notifier


def get_admin_id(x_admin_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller-supplied admin identity, recorded in booking history."""
    return x_admin_id
