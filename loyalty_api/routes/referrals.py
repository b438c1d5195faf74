"""
Реферальная программа: выдача кода, принятие, статистика
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import REFERRAL_ELIGIBILITY_CEILING
from shared.database import get_session
from loyalty_api.dependencies import get_current_user_id, get_rate_limiter
from loyalty_api.schemas import AcceptReferralRequest, error_response
from loyalty_api.services.rate_limiter import RateLimiter
from loyalty_api.services.referral_service import ReferralService, ReferralOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referrals", tags=["referrals"])

# Сообщения для отказов: клиент показывает конкретную причину
REJECTION_MESSAGES = {
    ReferralOutcome.SELF_REFERRAL: "You can't use your own referral code",
    ReferralOutcome.ALREADY_REFERRED: "You have already used a referral code",
    ReferralOutcome.RECEIVER_NOT_ELIGIBLE: (
        f"Referral codes are only for new members with fewer than {REFERRAL_ELIGIBILITY_CEILING} points"
    ),
}

RATE_LIMIT_MESSAGE = "Too many requests, please try again in a minute"


@router.post("/create")
async def create_referral_code(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    limiter: RateLimiter = Depends(get_rate_limiter)
):
    """
    Получить (или создать) свой реферальный код
    """
    result = await ReferralService.create_referral_code(session, user_id, limiter=limiter)

    if result.outcome == ReferralOutcome.RATE_LIMITED:
        return error_response(429, result.outcome.value, RATE_LIMIT_MESSAGE)

    return {"success": True, "code": result.code, "created": result.outcome == ReferralOutcome.CREATED}


@router.post("/accept")
async def accept_referral(
    body: AcceptReferralRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    limiter: RateLimiter = Depends(get_rate_limiter)
):
    """
    Принять реферальный код друга
    """
    result = await ReferralService.accept_referral(
        session, body.code, user_id, limiter=limiter, device_id=body.deviceId
    )

    if result.outcome == ReferralOutcome.RATE_LIMITED:
        return error_response(429, result.outcome.value, RATE_LIMIT_MESSAGE)

    if result.outcome != ReferralOutcome.ACCEPTED:
        return error_response(400, result.outcome.value, REJECTION_MESSAGES[result.outcome])

    return {
        "success": True,
        "outcome": result.outcome.value,
        "referrerId": result.referrer_id,
        "pointsAwarded": result.receiver_reward,
        "newPointsBalance": result.receiver_balance,
    }


@router.get("/stats")
async def referral_stats(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session)
):
    """Статистика по приглашённым"""
    stats = await ReferralService.get_referral_stats(session, user_id)
    return {
        "referralCode": stats["referral_code"],
        "referralsCount": stats["referrals_count"],
        "totalEarned": stats["total_earned"],
        "referredWithCode": stats["referred_with_code"],
        "referrals": [
            {
                "receiverId": referral["receiver_id"],
                "status": referral["status"],
                "acceptedAt": referral["accepted_at"].isoformat(),
            }
            for referral in stats["referrals"]
        ],
    }
