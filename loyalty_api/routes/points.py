"""
Баланс и история баллов
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import get_session
from loyalty_api.dependencies import get_current_user_id
from loyalty_api.services.points_ledger import PointsLedger

router = APIRouter(prefix="/points", tags=["points"])


@router.get("/balance")
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session)
):
    return {"userId": user_id, "points": await PointsLedger.get_balance(session, user_id)}


@router.get("/history")
async def get_history(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session)
):
    transactions = await PointsLedger.get_history(session, user_id, limit=limit)
    return {
        "transactions": [
            {
                "id": tx.id,
                "type": tx.transaction_type,
                "amount": tx.amount,
                "balanceAfter": tx.balance_after,
                "referenceId": tx.reference_id,
                "createdAt": tx.created_at.isoformat() if tx.created_at else None,
            }
            for tx in transactions
        ]
    }
