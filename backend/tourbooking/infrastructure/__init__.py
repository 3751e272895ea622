"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .payments import PaymentGateway, PaymentIntent, Refund, StripeGateway

__all__ = ['PaymentGateway', 'PaymentIntent', 'Refund', 'StripeGateway']
