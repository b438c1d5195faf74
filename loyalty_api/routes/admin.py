"""
Админ-эндпоинты: ручная корректировка баллов и сверка просроченных наград

Админка меняет баланс только через PointsLedger.adjust, как и остальной код.
"""
import logging
from collections import Counter

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import get_session
from loyalty_api.dependencies import get_admin_user_id, get_refund_coordinator
from loyalty_api.schemas import AdminAdjustPointsRequest, error_response
from loyalty_api.services.points_ledger import PointsLedger, InsufficientBalance, TX_ADMIN_ADJUSTMENT
from loyalty_api.services.refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/points/adjust")
async def adjust_points(
    body: AdminAdjustPointsRequest,
    admin_id: str = Depends(get_admin_user_id),
    session: AsyncSession = Depends(get_session)
):
    """
    Начислить или списать баллы пользователю
    """
    try:
        new_balance = await PointsLedger.adjust(
            session,
            body.userId,
            body.delta,
            TX_ADMIN_ADJUSTMENT,
            reference_id=f"admin:{admin_id}"
        )
        await session.commit()

    except InsufficientBalance:
        await session.rollback()
        return error_response(400, "insufficient_balance", "Adjustment would make the balance negative")

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adjusting points for user {body.userId}: {e}", exc_info=True)
        raise

    logger.info(
        f"Admin {admin_id} adjusted points of user {body.userId} by {body.delta}: {body.reason or '-'}"
    )

    return {"success": True, "userId": body.userId, "newPointsBalance": new_balance}


@router.post("/redemptions/reconcile")
async def reconcile_redemptions(
    admin_id: str = Depends(get_admin_user_id),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator)
):
    """
    Запустить сверку просроченных погашений вручную
    """
    results = await coordinator.reconcile()
    outcomes = Counter(result.outcome.value for result in results)

    logger.info(f"Admin {admin_id} ran reconciliation: {dict(outcomes)}")

    return {
        "success": True,
        "checked": len(results),
        "refunded": outcomes.get("refunded", 0),
        "outcomes": dict(outcomes),
    }
