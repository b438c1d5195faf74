"""
Реферальная система с анти-абузом

Порядок проверок при принятии кода фиксирован:
    self_referral -> already_referred -> receiver_not_eligible -> rate_limited -> accepted

Предварительные проверки дают детерминированный ответ, а окончательное
решение принимается в транзакции записи: отметка "уже приглашён" создаётся
через INSERT ... ON CONFLICT DO NOTHING по receiver_id, начисление получателю -
условным UPDATE с потолком баланса.
"""
import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.clock import utcnow
from shared.config import (
    REFERRAL_CODE_ALPHABET,
    REFERRAL_CODE_LENGTH,
    REFERRAL_ELIGIBILITY_CEILING,
    REFERRAL_RECEIVER_REWARD,
    REFERRAL_REFERRER_REWARD,
    RATE_LIMIT_REFERRAL_PER_MINUTE,
    RATE_LIMIT_REFERRAL_WINDOW,
)
from shared.database import PointsTransaction, dialect_insert
from shared.referral_model import ReferralCode, Referral, ReferredMarker, ReferralStatus
from shared.validation import ValidationError, normalize_referral_code
from loyalty_api.services.points_ledger import PointsLedger, ReceiverNotEligible, TX_REFERRAL
from loyalty_api.services.rate_limiter import (
    RateLimiter, rate_limiter, ACTION_REFERRAL_CREATE, ACTION_REFERRAL_ACCEPT
)

logger = logging.getLogger(__name__)

# Попыток сгенерировать незанятый код
MAX_CODE_ATTEMPTS = 20


class ReferralOutcome(str, enum.Enum):
    """Результаты реферальных операций"""
    ACCEPTED = "accepted"
    SELF_REFERRAL = "self_referral"
    ALREADY_REFERRED = "already_referred"
    RECEIVER_NOT_ELIGIBLE = "receiver_not_eligible"
    RATE_LIMITED = "rate_limited"
    CREATED = "created"
    EXISTING = "existing"


@dataclass
class ReferralResult:
    outcome: ReferralOutcome
    code: Optional[str] = None
    referrer_id: Optional[str] = None
    receiver_reward: int = 0
    referrer_reward: int = 0
    receiver_balance: Optional[int] = None


def generate_referral_code() -> str:
    """
    Генерация реферального кода: 6 символов без похожих букв/цифр (0/O, 1/I)
    """
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


class ReferralService:
    """Сервис реферальной системы"""

    @staticmethod
    async def create_referral_code(
        session: AsyncSession,
        referrer_id: str,
        limiter: Optional[RateLimiter] = None,
        now: Optional[datetime] = None
    ) -> ReferralResult:
        """
        Получить код реферера, создав его при первом обращении
        """
        limiter = limiter or rate_limiter
        allowed = await limiter.check(
            referrer_id, ACTION_REFERRAL_CREATE,
            RATE_LIMIT_REFERRAL_PER_MINUTE, RATE_LIMIT_REFERRAL_WINDOW
        )
        if not allowed:
            return ReferralResult(ReferralOutcome.RATE_LIMITED)

        existing = await ReferralService.get_code_for_referrer(session, referrer_id)
        if existing:
            return ReferralResult(ReferralOutcome.EXISTING, code=existing.code, referrer_id=referrer_id)

        now = now or utcnow()

        try:
            for _ in range(MAX_CODE_ATTEMPTS):
                code = generate_referral_code()
                result = await session.execute(
                    dialect_insert(session, ReferralCode)
                    .values(code=code, referrer_id=referrer_id, created_at=now)
                    .on_conflict_do_nothing()
                    .returning(ReferralCode.code)
                )
                if result.scalar_one_or_none() is not None:
                    await session.commit()
                    logger.info(f"Created referral code {code} for user {referrer_id}")
                    return ReferralResult(ReferralOutcome.CREATED, code=code, referrer_id=referrer_id)

                # конфликт: либо код занят, либо параллельный запрос уже создал код рефереру
                await session.rollback()
                existing = await ReferralService.get_code_for_referrer(session, referrer_id)
                if existing:
                    return ReferralResult(ReferralOutcome.EXISTING, code=existing.code, referrer_id=referrer_id)

        except Exception as e:
            await session.rollback()
            logger.error(f"Error creating referral code for user {referrer_id}: {e}", exc_info=True)
            raise

        raise RuntimeError(f"Unable to generate unique referral code after {MAX_CODE_ATTEMPTS} attempts")

    @staticmethod
    async def accept_referral(
        session: AsyncSession,
        code: str,
        receiver_id: str,
        limiter: Optional[RateLimiter] = None,
        now: Optional[datetime] = None,
        device_id: Optional[str] = None
    ) -> ReferralResult:
        """
        Принять реферальный код

        device_id попадает только в лог принятия (разбор жалоб на абуз)

        Raises:
            ValidationError: код некорректен или не существует
        """
        code = normalize_referral_code(code)
        limiter = limiter or rate_limiter
        now = now or utcnow()

        referral_code = await ReferralService.get_code(session, code)
        if referral_code is None:
            raise ValidationError(f"Referral code not found: {code}", error_code="unknown_code")

        referrer_id = referral_code.referrer_id

        # 1. Нельзя пригласить самого себя
        if referrer_id == receiver_id:
            logger.warning(f"User {receiver_id} tried to refer themselves with code {code}")
            return ReferralResult(ReferralOutcome.SELF_REFERRAL, code=code, referrer_id=referrer_id)

        # 2. Получатель уже принимал какой-либо код
        if await ReferralService.is_referred(session, receiver_id):
            logger.info(f"User {receiver_id} is already referred, code {code} rejected")
            return ReferralResult(ReferralOutcome.ALREADY_REFERRED, code=code, referrer_id=referrer_id)

        # 3. Потолок баланса получателя (живой баланс)
        balance = await PointsLedger.get_balance(session, receiver_id)
        if balance >= REFERRAL_ELIGIBILITY_CEILING:
            logger.info(
                f"User {receiver_id} is not eligible for referral: "
                f"balance={balance}, ceiling={REFERRAL_ELIGIBILITY_CEILING}"
            )
            return ReferralResult(
                ReferralOutcome.RECEIVER_NOT_ELIGIBLE, code=code, referrer_id=referrer_id,
                receiver_balance=balance
            )

        # 4. Rate limit
        allowed = await limiter.check(
            receiver_id, ACTION_REFERRAL_ACCEPT,
            RATE_LIMIT_REFERRAL_PER_MINUTE, RATE_LIMIT_REFERRAL_WINDOW
        )
        if not allowed:
            return ReferralResult(ReferralOutcome.RATE_LIMITED, code=code, referrer_id=referrer_id)

        # 5. Запись: отметка, принятие и оба начисления в одной транзакции
        try:
            result = await session.execute(
                dialect_insert(session, ReferredMarker)
                .values(receiver_id=receiver_id, code=code, referred_at=now)
                .on_conflict_do_nothing(index_elements=[ReferredMarker.receiver_id])
                .returning(ReferredMarker.receiver_id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                logger.info(f"User {receiver_id} was referred concurrently, code {code} rejected")
                return ReferralResult(ReferralOutcome.ALREADY_REFERRED, code=code, referrer_id=referrer_id)

            result = await session.execute(
                dialect_insert(session, Referral)
                .values(
                    code=code,
                    referrer_id=referrer_id,
                    receiver_id=receiver_id,
                    status=ReferralStatus.ACCEPTED,
                    accepted_at=now
                )
                .on_conflict_do_nothing(index_elements=[Referral.code, Referral.receiver_id])
                .returning(Referral.id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                return ReferralResult(ReferralOutcome.ALREADY_REFERRED, code=code, referrer_id=referrer_id)

            # строки балансов блокируются в порядке user_id: встречные принятия
            # (X по коду Y и Y по коду X) не взаимоблокируются в PostgreSQL
            credits = sorted([
                (receiver_id, REFERRAL_RECEIVER_REWARD, REFERRAL_ELIGIBILITY_CEILING),
                (referrer_id, REFERRAL_REFERRER_REWARD, None),
            ], key=lambda credit: credit[0])
            balances = {}
            for user_id, amount, ceiling in credits:
                balances[user_id] = await PointsLedger.adjust(
                    session,
                    user_id,
                    amount,
                    TX_REFERRAL,
                    reference_id=code,
                    ceiling=ceiling
                )
            receiver_balance = balances[receiver_id]

            await session.commit()

        except ReceiverNotEligible:
            await session.rollback()
            logger.info(f"User {receiver_id} crossed the referral ceiling before acceptance of {code}")
            return ReferralResult(ReferralOutcome.RECEIVER_NOT_ELIGIBLE, code=code, referrer_id=referrer_id)

        except Exception as e:
            await session.rollback()
            logger.error(f"Error accepting referral {code} for user {receiver_id}: {e}", exc_info=True)
            raise

        logger.info(
            f"Referral accepted: user {receiver_id} got {REFERRAL_RECEIVER_REWARD}, "
            f"referrer {referrer_id} got {REFERRAL_REFERRER_REWARD} (code {code}, device {device_id or '-'})"
        )

        return ReferralResult(
            ReferralOutcome.ACCEPTED,
            code=code,
            referrer_id=referrer_id,
            receiver_reward=REFERRAL_RECEIVER_REWARD,
            referrer_reward=REFERRAL_REFERRER_REWARD,
            receiver_balance=receiver_balance
        )

    @staticmethod
    async def get_code(session: AsyncSession, code: str) -> Optional[ReferralCode]:
        result = await session.execute(
            select(ReferralCode).where(ReferralCode.code == code)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_code_for_referrer(session: AsyncSession, referrer_id: str) -> Optional[ReferralCode]:
        result = await session.execute(
            select(ReferralCode).where(ReferralCode.referrer_id == referrer_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def is_referred(session: AsyncSession, receiver_id: str) -> bool:
        result = await session.execute(
            select(ReferredMarker.receiver_id).where(ReferredMarker.receiver_id == receiver_id)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def get_referral_stats(session: AsyncSession, user_id: str) -> Dict:
        """
        Получение статистики по рефералам
        """
        referral_code = await ReferralService.get_code_for_referrer(session, user_id)

        result = await session.execute(
            select(ReferredMarker).where(ReferredMarker.receiver_id == user_id)
        )
        marker = result.scalar_one_or_none()

        if not referral_code:
            return {
                "referral_code": None,
                "referrals_count": 0,
                "total_earned": 0,
                "referred_with_code": marker.code if marker else None,
                "referrals": []
            }

        # Считаем рефералов
        result = await session.execute(
            select(func.count(Referral.id)).where(Referral.referrer_id == user_id)
        )
        referrals_count = result.scalar() or 0

        # Считаем заработанные баллы (только по своему коду)
        result = await session.execute(
            select(func.sum(PointsTransaction.amount)).where(
                PointsTransaction.user_id == user_id,
                PointsTransaction.transaction_type == TX_REFERRAL,
                PointsTransaction.reference_id == referral_code.code
            )
        )
        total_earned = result.scalar() or 0

        # Получаем список рефералов
        result = await session.execute(
            select(Referral)
            .where(Referral.referrer_id == user_id)
            .order_by(Referral.accepted_at.desc())
        )
        referrals = [
            {
                "receiver_id": referral.receiver_id,
                "status": referral.status.value,
                "accepted_at": referral.accepted_at
            }
            for referral in result.scalars().all()
        ]

        return {
            "referral_code": referral_code.code,
            "referrals_count": referrals_count,
            "total_earned": total_earned,
            "referred_with_code": marker.code if marker else None,
            "referrals": referrals
        }
