"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from laundrify.api.bookings import router as bookings_router
from laundrify.api.referrals import router as referrals_router
from laundrify.api.admin import router as admin_router
from laundrify.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(bookings_router)
api_router.include_router(referrals_router)
api_router.include_router(admin_router)
api_router.include_router(health_router)
