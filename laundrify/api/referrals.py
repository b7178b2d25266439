"""
Referral API - code generation, validation, claiming and stats.
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from laundrify.database import get_db
from laundrify.schemas.api_responses import (
    ApplyReferralRequest,
    GenerateReferralRequest,
    ReferralDetail,
)
from laundrify.services import referrals as referral_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/referrals", tags=["referrals"])


@router.post("/generate")
async def generate_referral(
    payload: GenerateReferralRequest,
    db: AsyncSession = Depends(get_db),
):
    """Return the user's active referral code, creating one if needed."""
    referral = await referral_service.get_or_create_active_referral(db, payload.user_id)
    data = ReferralDetail.from_referral(referral).model_dump(mode="json")
    data["share_link"] = referral_service.build_share_link(referral)
    return {"success": True, "data": data}


@router.get("/validate/{code}")
async def validate_referral(
    code: str,
    db: AsyncSession = Depends(get_db),
):
    referral = await referral_service.validate_referral_code(db, code)
    return {
        "success": True,
        "data": {
            "valid": True,
            "code": referral.referral_code,
            "discount_percentage": referral.discount_percentage,
            "expires_at": referral.expires_at.isoformat() if referral.expires_at else None,
        },
    }


@router.post("/apply")
async def apply_referral(
    payload: ApplyReferralRequest,
    db: AsyncSession = Depends(get_db),
):
    """Claim a friend's code at registration time."""
    referral = await referral_service.apply_referral_code(db, payload.referral_code, payload.user_id)
    return {"success": True, "data": ReferralDetail.from_referral(referral).model_dump(mode="json")}


@router.get("/stats/{user_id}")
async def referral_stats(
    user_id: str,
    db: AsyncSession = Depends(get_db),
):
    stats = await referral_service.referral_stats(db, user_id)
    for entry in stats["referral_history"]:
        for key in ("registration_date", "first_payment_date", "reward_date"):
            entry[key] = entry[key].isoformat() if entry[key] else None
    return {"success": True, "data": stats}


@router.get("/share-link/{user_id}")
async def share_link(
    user_id: str,
    db: AsyncSession = Depends(get_db),
):
    referral = await referral_service.get_or_create_active_referral(db, user_id)
    return {
        "success": True,
        "data": {
            "code": referral.referral_code,
            "share_link": referral_service.build_share_link(referral),
        },
    }
