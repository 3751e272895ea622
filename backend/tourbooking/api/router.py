"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from tourbooking.api.routes import admin, bookings, tours, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(tours.router)
api_router.include_router(bookings.router)
api_router.include_router(webhooks.router)
api_router.include_router(admin.router)
