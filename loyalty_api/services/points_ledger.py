"""
Сервис баланса баллов (PointsLedger)

Все изменения баланса проходят через один условный UPDATE:
проверка и изменение выполняются одним оператором, без read-modify-write.
Сервис не делает commit: транзакцией владеет вызывающий код.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from shared.database import Balance, PointsTransaction, dialect_insert

logger = logging.getLogger(__name__)

# Типы транзакций баллов
TX_REWARD_REDEEMED = "reward_redeemed"
TX_REWARD_REFUND = "reward_expiration_refund"
TX_REFERRAL = "referral"
TX_ADMIN_ADJUSTMENT = "admin_adjustment"


class InsufficientBalance(Exception):
    """Недостаточно баллов"""

    def __init__(self, user_id: str, required: int):
        super().__init__(f"Insufficient balance for user {user_id}: required {required}")
        self.user_id = user_id
        self.required = required


class ReceiverNotEligible(Exception):
    """Баланс достиг потолка, начисление запрещено"""

    def __init__(self, user_id: str, ceiling: int):
        super().__init__(f"Balance of user {user_id} reached ceiling {ceiling}")
        self.user_id = user_id
        self.ceiling = ceiling


class PointsLedger:
    """Атомарный учёт баллов"""

    @staticmethod
    async def ensure_balance(session: AsyncSession, user_id: str):
        """
        Создать строку баланса, если её нет (INSERT ... ON CONFLICT DO NOTHING)
        """
        stmt = (
            dialect_insert(session, Balance)
            .values(user_id=user_id, points=0)
            .on_conflict_do_nothing(index_elements=[Balance.user_id])
        )
        await session.execute(stmt)

    @staticmethod
    async def adjust(
        session: AsyncSession,
        user_id: str,
        delta: int,
        transaction_type: str,
        reference_id: Optional[str] = None,
        ceiling: Optional[int] = None
    ) -> int:
        """
        АТОМАРНО изменить баланс на delta

        Args:
            delta: положительное для начисления, отрицательное для списания
            ceiling: если задан, изменение применяется только при points < ceiling

        Returns:
            Новый баланс

        Raises:
            InsufficientBalance: списание увело бы баланс в минус
            ReceiverNotEligible: баланс уже >= ceiling
        """
        await PointsLedger.ensure_balance(session, user_id)

        stmt = update(Balance).where(Balance.user_id == user_id)
        if delta < 0:
            stmt = stmt.where(Balance.points + delta >= 0)
        if ceiling is not None:
            stmt = stmt.where(Balance.points < ceiling)

        result = await session.execute(
            stmt
            .values(points=Balance.points + delta, updated_at=func.now())
            .returning(Balance.points)
        )
        new_balance = result.scalar_one_or_none()

        if new_balance is None:
            # строка баланса существует, значит не прошло условие WHERE
            if delta < 0:
                raise InsufficientBalance(user_id, -delta)
            raise ReceiverNotEligible(user_id, ceiling)

        session.add(PointsTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=delta,
            balance_after=new_balance,
            reference_id=reference_id
        ))

        logger.info(
            f"Adjusted balance of user {user_id} by {delta} ({transaction_type}). "
            f"Balance: {new_balance}"
        )

        return new_balance

    @staticmethod
    async def get_balance(session: AsyncSession, user_id: str) -> int:
        """
        Текущий баланс (0 для неизвестного пользователя)
        """
        result = await session.execute(
            select(Balance.points).where(Balance.user_id == user_id)
        )
        return result.scalar_one_or_none() or 0

    @staticmethod
    async def get_history(
        session: AsyncSession,
        user_id: str,
        limit: int = 50
    ) -> List[PointsTransaction]:
        """
        Последние транзакции пользователя
        """
        result = await session.execute(
            select(PointsTransaction)
            .where(PointsTransaction.user_id == user_id)
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
