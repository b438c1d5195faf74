"""
Сервис погашения наград (RedemptionStore)

Жизненный цикл погашения:
    создано (баллы списаны) -> использовано на кассе (терминально)
                            -> просрочено + баллы возвращены (терминально)

Каждый переход - условный UPDATE по текущему состоянию записи, поэтому
повторный вызов с любого триггера ничего не меняет.
"""
import enum
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.clock import utcnow
from shared.config import REWARD_CATALOG, REDEMPTION_TTL_MINUTES, REDEMPTION_CODE_LENGTH
from shared.database import Redemption
from shared.errors import InvariantViolation
from shared.redis_client import RedisChangeFeed, redemption_feed
from shared.validation import ValidationError, validate_reward_id, parse_redemption_id
from loyalty_api.services.points_ledger import (
    PointsLedger, InsufficientBalance, TX_REWARD_REDEEMED, TX_REWARD_REFUND
)

logger = logging.getLogger(__name__)


class RedemptionOutcome(str, enum.Enum):
    """Результаты операций над погашениями"""
    CREATED = "created"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CONSUMED = "consumed"
    ALREADY_TERMINAL = "already_terminal"
    REFUNDED = "refunded"
    ALREADY_REFUNDED = "already_refunded"
    ALREADY_EXPIRED = "already_expired"  # просрочено без возврата (старые данные)
    USED = "used"
    NOT_DUE = "not_due"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass
class RedemptionResult:
    outcome: RedemptionOutcome
    redemption: Optional[Redemption] = None
    balance: Optional[int] = None
    points_refunded: int = 0

    @property
    def refunded(self) -> bool:
        return self.outcome == RedemptionOutcome.REFUNDED


def generate_redemption_code() -> str:
    """
    Код для кассы: 8 цифр
    """
    return str(secrets.randbelow(10 ** REDEMPTION_CODE_LENGTH)).zfill(REDEMPTION_CODE_LENGTH)


class RedemptionService:
    """Сервис погашения наград"""

    @staticmethod
    async def request_redemption(
        session: AsyncSession,
        user_id: str,
        reward_id: str,
        now: Optional[datetime] = None,
        feed: Optional[RedisChangeFeed] = None
    ) -> RedemptionResult:
        """
        Погасить награду: списать баллы и создать запись в одной транзакции

        Raises:
            ValidationError: награды нет в каталоге
        """
        valid, error = validate_reward_id(reward_id)
        if not valid:
            raise ValidationError(error, error_code="unknown_reward")

        reward = REWARD_CATALOG[reward_id]
        now = now or utcnow()

        redemption = Redemption(
            id=uuid.uuid4(),
            user_id=user_id,
            reward_id=reward_id,
            reward_title=reward["title"],
            code=generate_redemption_code(),
            points_value=reward["points"],
            redeemed_at=now,
            expires_at=now + timedelta(minutes=REDEMPTION_TTL_MINUTES),
            is_used=False,
            is_expired=False,
            points_refunded=False
        )

        try:
            new_balance = await PointsLedger.adjust(
                session,
                user_id,
                -redemption.points_value,
                TX_REWARD_REDEEMED,
                reference_id=str(redemption.id)
            )
            session.add(redemption)
            await session.commit()

        except InsufficientBalance:
            await session.rollback()
            balance = await PointsLedger.get_balance(session, user_id)
            logger.info(
                f"Redemption of {reward_id} rejected for user {user_id}: "
                f"balance={balance}, required={redemption.points_value}"
            )
            return RedemptionResult(RedemptionOutcome.INSUFFICIENT_BALANCE, balance=balance)

        except Exception as e:
            await session.rollback()
            logger.error(f"Error redeeming {reward_id} for user {user_id}: {e}", exc_info=True)
            raise

        logger.info(
            f"User {user_id} redeemed {reward_id} for {redemption.points_value} points "
            f"(redemption={redemption.id}, expires_at={redemption.expires_at.isoformat()})"
        )

        await RedemptionService._publish(feed, redemption, "created")

        return RedemptionResult(RedemptionOutcome.CREATED, redemption=redemption, balance=new_balance)

    @staticmethod
    async def consume(
        session: AsyncSession,
        redemption_id: str,
        now: Optional[datetime] = None,
        feed: Optional[RedisChangeFeed] = None
    ) -> RedemptionResult:
        """
        Использовать награду на кассе

        Успешно только если запись не использована, не просрочена и срок не вышел.
        """
        rid = parse_redemption_id(redemption_id)
        now = now or utcnow()

        try:
            result = await session.execute(
                update(Redemption)
                .where(
                    Redemption.id == rid,
                    Redemption.is_used.is_(False),
                    Redemption.is_expired.is_(False),
                    Redemption.expires_at > now
                )
                .values(is_used=True, used_at=now)
                .returning(Redemption)
            )
            redemption = result.scalar_one_or_none()

            if redemption is None:
                await session.rollback()
            else:
                await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error consuming redemption {rid}: {e}", exc_info=True)
            raise

        if redemption is None:
            existing = await RedemptionService.get(session, rid)
            if existing is None:
                raise ValidationError(f"Redemption not found: {rid}", error_code="unknown_redemption")

            logger.info(
                f"Redemption {rid} is terminal: used={existing.is_used}, "
                f"expired={existing.is_expired}, expires_at={existing.expires_at.isoformat()}"
            )
            return RedemptionResult(RedemptionOutcome.ALREADY_TERMINAL, redemption=existing)

        logger.info(f"Redemption {rid} consumed by user {redemption.user_id}")

        await RedemptionService._publish(feed, redemption, "used")

        return RedemptionResult(RedemptionOutcome.CONSUMED, redemption=redemption)

    @staticmethod
    async def mark_expired_and_refund(
        session: AsyncSession,
        redemption_id: str,
        now: Optional[datetime] = None,
        feed: Optional[RedisChangeFeed] = None
    ) -> RedemptionResult:
        """
        Пометить погашение просроченным и вернуть баллы - одна транзакция

        Условие UPDATE: не просрочено, не возвращено, не использовано, срок вышел.
        Второй вызов не находит подходящей строки и ничего не начисляет.

        Raises:
            ValidationError: погашение не найдено
            InvariantViolation: возврат отмечен у непросроченной записи
        """
        rid = parse_redemption_id(redemption_id)
        now = now or utcnow()

        try:
            result = await session.execute(
                update(Redemption)
                .where(
                    Redemption.id == rid,
                    Redemption.is_expired.is_(False),
                    Redemption.points_refunded.is_(False),
                    Redemption.is_used.is_(False),
                    Redemption.expires_at <= now
                )
                .values(is_expired=True, points_refunded=True, expired_at=now)
                .returning(Redemption)
            )
            redemption = result.scalar_one_or_none()

            if redemption is None:
                await session.rollback()
                new_balance = None
            else:
                new_balance = await PointsLedger.adjust(
                    session,
                    redemption.user_id,
                    redemption.points_value,
                    TX_REWARD_REFUND,
                    reference_id=str(rid)
                )
                await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error refunding redemption {rid}: {e}", exc_info=True)
            raise

        if redemption is None:
            return await RedemptionService._refund_noop(session, rid, now)

        logger.info(
            f"Refunded {redemption.points_value} points to user {redemption.user_id} "
            f"for expired redemption {rid}. Balance: {new_balance}"
        )

        await RedemptionService._publish(feed, redemption, "expired")

        return RedemptionResult(
            RedemptionOutcome.REFUNDED,
            redemption=redemption,
            balance=new_balance,
            points_refunded=redemption.points_value
        )

    @staticmethod
    async def _refund_noop(session: AsyncSession, rid: uuid.UUID, now: datetime) -> RedemptionResult:
        """
        Разобрать, почему условный UPDATE не нашёл строку
        """
        existing = await RedemptionService.get(session, rid)

        if existing is None:
            raise ValidationError(f"Redemption not found: {rid}", error_code="unknown_redemption")

        if existing.points_refunded and not existing.is_expired:
            logger.error(f"Redemption {rid} is refunded but not expired")
            raise InvariantViolation(f"Redemption {rid} has points_refunded without is_expired")

        if existing.is_used:
            outcome = RedemptionOutcome.USED
        elif existing.points_refunded:
            outcome = RedemptionOutcome.ALREADY_REFUNDED
        elif existing.is_expired:
            logger.warning(f"Redemption {rid} expired without refund, leaving as is")
            outcome = RedemptionOutcome.ALREADY_EXPIRED
        else:
            outcome = RedemptionOutcome.NOT_DUE

        logger.debug(f"Refund of redemption {rid} is a no-op: {outcome.value}")

        return RedemptionResult(outcome, redemption=existing)

    @staticmethod
    async def get(session: AsyncSession, redemption_id: uuid.UUID) -> Optional[Redemption]:
        """
        Получить погашение по ID (свежее состояние из БД)
        """
        result = await session.execute(
            select(Redemption)
            .where(Redemption.id == redemption_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def active_for(session: AsyncSession, user_id: str) -> List[Redemption]:
        """
        Активные погашения пользователя: не использованы и не просрочены,
        новые сверху
        """
        result = await session.execute(
            select(Redemption)
            .where(
                Redemption.user_id == user_id,
                Redemption.is_used.is_(False),
                Redemption.is_expired.is_(False)
            )
            .order_by(Redemption.redeemed_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def due_for_refund(
        session: AsyncSession,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
        limit: int = 200
    ) -> List[uuid.UUID]:
        """
        ID погашений, у которых срок вышел, но они ещё не помечены просроченными

        Записи с points_refunded=true (в том числе нарушающие инвариант) в выборку не попадают.
        """
        now = now or utcnow()

        stmt = select(Redemption.id).where(
            Redemption.is_used.is_(False),
            Redemption.is_expired.is_(False),
            Redemption.points_refunded.is_(False),
            Redemption.expires_at <= now
        )
        if user_id is not None:
            stmt = stmt.where(Redemption.user_id == user_id)

        result = await session.execute(stmt.order_by(Redemption.expires_at.asc()).limit(limit))
        return list(result.scalars().all())

    @staticmethod
    def subscribe(
        user_id: str,
        feed: Optional[RedisChangeFeed] = None,
        announce: bool = False
    ) -> AsyncIterator[dict]:
        """
        Подписка на изменения погашений пользователя

        С announce=True первым придёт событие "subscribed" - после него можно
        читать снимок активных погашений, не теряя изменений.
        """
        return (feed or redemption_feed).subscribe(user_id, announce=announce)

    @staticmethod
    async def _publish(feed: Optional[RedisChangeFeed], redemption: Redemption, change: str):
        """
        Опубликовать изменение после commit; ошибка публикации не откатывает изменение
        """
        try:
            await (feed or redemption_feed).publish(redemption.user_id, {
                "type": change,
                "redemptionId": str(redemption.id),
                "userId": redemption.user_id,
            })
        except Exception as e:
            logger.error(f"Error publishing {change} for redemption {redemption.id}: {e}")
