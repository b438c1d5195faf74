"""
Погашение наград: создание, использование на кассе, возврат по таймеру, активные коды
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import REWARD_CATALOG
from shared.database import get_session
from shared.redis_client import RedisChangeFeed
from loyalty_api.dependencies import (
    get_current_user_id, get_staff_user_id, get_redemption_feed, get_refund_coordinator
)
from loyalty_api.schemas import RedeemRewardRequest, error_response
from loyalty_api.services.points_ledger import PointsLedger
from loyalty_api.services.redemption_service import RedemptionService, RedemptionOutcome
from loyalty_api.services.refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rewards"])


@router.get("/rewards")
async def list_rewards():
    """Каталог наград"""
    return {
        "rewards": [
            {"rewardId": reward_id, "title": reward["title"], "pointsRequired": reward["points"]}
            for reward_id, reward in REWARD_CATALOG.items()
        ]
    }


@router.post("/rewards/redeem", status_code=201)
async def redeem_reward(
    body: RedeemRewardRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    feed: RedisChangeFeed = Depends(get_redemption_feed)
):
    """
    Погасить награду за баллы
    """
    result = await RedemptionService.request_redemption(session, user_id, body.rewardId, feed=feed)

    if result.outcome == RedemptionOutcome.INSUFFICIENT_BALANCE:
        return error_response(
            400,
            result.outcome.value,
            f"Not enough points: you have {result.balance}, "
            f"{REWARD_CATALOG[body.rewardId]['points']} required"
        )

    redemption = result.redemption
    return {
        "success": True,
        "redemptionCode": redemption.code,
        "newPointsBalance": result.balance,
        "pointsDeducted": redemption.points_value,
        "rewardTitle": redemption.reward_title,
        "expiresAt": redemption.expires_at.isoformat(),
        "message": "Reward redeemed! Show this code to the cashier.",
        "redemption": redemption.to_dict(),
    }


@router.post("/redemptions/{redemption_id}/consume")
async def consume_redemption(
    redemption_id: str,
    staff_id: str = Depends(get_staff_user_id),
    session: AsyncSession = Depends(get_session),
    feed: RedisChangeFeed = Depends(get_redemption_feed)
):
    """
    Использование кода на кассе (только сотрудники)
    """
    result = await RedemptionService.consume(session, redemption_id, feed=feed)

    if result.outcome == RedemptionOutcome.ALREADY_TERMINAL:
        redemption = result.redemption
        reason = "already used" if redemption.is_used else "expired"
        return error_response(409, result.outcome.value, f"Reward code {redemption.code} is {reason}")

    logger.info(f"Staff {staff_id} accepted reward code {result.redemption.code}")

    return {"success": True, "redemption": result.redemption.to_dict()}


@router.post("/redemptions/{redemption_id}/expire")
async def expire_redemption(
    redemption_id: str,
    user_id: str = Depends(get_current_user_id),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator)
):
    """
    Клиентский таймер дошёл до нуля: вернуть баллы, если ещё не возвращены
    """
    result = await coordinator.on_expired_locally(redemption_id)

    if result.outcome == RedemptionOutcome.TRANSIENT_FAILURE:
        return error_response(503, result.outcome.value, "Refund is temporarily unavailable, it will be retried")

    if result.redemption is not None and result.redemption.user_id != user_id:
        logger.warning(f"User {user_id} fired expiry for redemption {redemption_id} of another user")

    async with coordinator.session_factory() as session:
        balance = await PointsLedger.get_balance(session, user_id)

    return {
        "success": True,
        "outcome": result.outcome.value,
        "refunded": result.refunded,
        "pointsRefunded": result.points_refunded,
        "alreadyRefunded": result.outcome == RedemptionOutcome.ALREADY_REFUNDED,
        "newPointsBalance": balance,
    }


@router.get("/redemptions/active")
async def active_redemptions(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session)
):
    """Активные (не использованные и не просроченные) погашения"""
    redemptions = await RedemptionService.active_for(session, user_id)
    return {"redemptions": [redemption.to_dict() for redemption in redemptions]}


@router.get("/redemptions/active/stream")
async def stream_active_redemptions(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
    feed: RedisChangeFeed = Depends(get_redemption_feed)
):
    """
    Server-Sent Events: актуальный список активных погашений на каждое изменение
    """

    async def snapshot() -> str:
        await coordinator.handle_change(user_id)
        async with coordinator.session_factory() as session:
            redemptions = await RedemptionService.active_for(session, user_id)
        payload = {"redemptions": [redemption.to_dict() for redemption in redemptions]}
        return f"event: active_redemptions\ndata: {json.dumps(payload)}\n\n"

    async def events():
        subscription = RedemptionService.subscribe(user_id, feed=feed, announce=True)
        try:
            # первое событие - подтверждение подписки, поэтому первый снимок
            # читается уже после неё и ни одно изменение не теряется
            async for event in subscription:
                if await request.is_disconnected():
                    break
                logger.debug(f"Streaming active redemptions to {user_id} after {event.get('type')}")
                yield await snapshot()
        finally:
            await subscription.aclose()

    return StreamingResponse(events(), media_type="text/event-stream")
