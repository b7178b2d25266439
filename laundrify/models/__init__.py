"""
Database models - import all models here so Alembic can discover them.
"""
from laundrify.models.booking import Booking
from laundrify.models.referral import Referral

__all__ = [
    "Booking",
    "Referral",
]
