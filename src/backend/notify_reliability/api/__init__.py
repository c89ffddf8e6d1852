"""API Routes Module."""

from fastapi import APIRouter

from notify_reliability.api import deliveries

router = APIRouter()

router.include_router(deliveries.router, prefix="/delivery", tags=["Notification Delivery"])
