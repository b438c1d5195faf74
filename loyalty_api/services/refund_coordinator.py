"""
Координатор возвратов баллов за просроченные награды

Три независимых триггера вызывают одну идемпотентную операцию
RedemptionService.mark_expired_and_refund:
    - лента изменений (handle_change / watch)
    - локальный таймер клиента (on_expired_locally)
    - периодическая сверка worker'а (reconcile)

Уведомление о возврате отправляется один раз на фактическое начисление,
no-op результаты уведомлений не порождают.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.admin_notifier import notify_admin, SendFunc
from shared.clock import utcnow
from shared.config import RECONCILE_BATCH_SIZE
from shared.database import AsyncSessionLocal
from shared.errors import InvariantViolation, TransientStoreFailure
from shared.redis_client import RedisChangeFeed, redemption_feed, refund_feed
from loyalty_api.services.redemption_service import (
    RedemptionService, RedemptionResult, RedemptionOutcome
)

logger = logging.getLogger(__name__)

# Ошибки доступности хранилища: операцию повторит следующий триггер.
# IntegrityError и ProgrammingError сюда не входят - повтор их не исправит
TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    asyncio.TimeoutError,
    RedisConnectionError,
    RedisTimeoutError,
    TransientStoreFailure,
)

RefundCallback = Callable[[RedemptionResult], Awaitable[None]]


class RefundCoordinator:
    """
    Точка входа всех триггеров возврата
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        feed: Optional[RedisChangeFeed] = None,
        notifications: Optional[RedisChangeFeed] = None,
        on_refund: Optional[RefundCallback] = None,
        admin_send_func: Optional[SendFunc] = None,
        clock=utcnow
    ):
        """
        Args:
            session_factory: фабрика сессий БД
            feed: лента изменений погашений
            notifications: канал уведомлений о возвратах
            on_refund: колбэк на каждый фактический возврат
            admin_send_func: отправка уведомлений админам при нарушении инварианта
            clock: источник текущего времени (naive UTC)
        """
        self.session_factory = session_factory
        self.feed = feed or redemption_feed
        self.notifications = notifications or refund_feed
        self.on_refund = on_refund
        self.admin_send_func = admin_send_func
        self.clock = clock

    async def on_expired_locally(self, redemption_id: str) -> RedemptionResult:
        """
        Триггер локального таймера: клиентский отсчёт дошёл до нуля
        """
        logger.info(f"Local timer fired for redemption {redemption_id}")
        return await self._expire_one(redemption_id)

    async def handle_change(self, user_id: str) -> List[RedemptionResult]:
        """
        Триггер ленты изменений: проверить все погашения пользователя
        со вышедшим сроком и вернуть баллы по каждому отдельно
        """
        try:
            async with self.session_factory() as session:
                due = await RedemptionService.due_for_refund(session, now=self.clock(), user_id=user_id)
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Store unavailable while scanning redemptions of user {user_id}: {e}")
            return []

        return await self._expire_many(due)

    async def watch(self, user_id: str, on_event: Optional[Callable[[dict], Awaitable[None]]] = None):
        """
        Слушать ленту изменений пользователя и запускать handle_change на каждое событие
        """
        async for event in self.feed.subscribe(user_id):
            logger.debug(f"Change feed event for user {user_id}: {event.get('type')}")
            await self.handle_change(user_id)
            if on_event is not None:
                await on_event(event)

    async def reconcile(self, limit: int = RECONCILE_BATCH_SIZE) -> List[RedemptionResult]:
        """
        Сверка: найти просроченные без возврата погашения всех пользователей
        (клиент мог так и не переподключиться)
        """
        try:
            async with self.session_factory() as session:
                due = await RedemptionService.due_for_refund(session, now=self.clock(), limit=limit)
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Store unavailable during reconciliation: {e}")
            return []

        if not due:
            return []

        logger.warning(f"Found {len(due)} expired redemptions without refund")

        return await self._expire_many(due)

    async def _expire_many(self, redemption_ids) -> List[RedemptionResult]:
        """
        Возвраты по одному на запись; сбой одной записи не останавливает остальные
        """
        results = []
        for redemption_id in redemption_ids:
            try:
                results.append(await self._expire_one(str(redemption_id)))
            except InvariantViolation:
                continue

        return results

    async def _expire_one(self, redemption_id: str) -> RedemptionResult:
        """
        Один вызов условного перехода в своей сессии
        """
        try:
            async with self.session_factory() as session:
                result = await RedemptionService.mark_expired_and_refund(
                    session,
                    redemption_id,
                    now=self.clock(),
                    feed=self.feed
                )

        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient failure refunding redemption {redemption_id}, will retry: {e}")
            return RedemptionResult(RedemptionOutcome.TRANSIENT_FAILURE)

        except InvariantViolation as e:
            logger.error(f"Invariant violation for redemption {redemption_id}: {e}", exc_info=True)
            await notify_admin(
                f"Redemption {redemption_id} is in an impossible state: {e}",
                level="critical",
                send_func=self.admin_send_func
            )
            raise

        if result.refunded:
            await self._notify_refund(result)

        return result

    async def _notify_refund(self, result: RedemptionResult):
        """
        Уведомить пользователя о возврате (ровно один раз на начисление)
        """
        redemption = result.redemption

        try:
            await self.notifications.publish(redemption.user_id, {
                "type": "points_refunded",
                "redemptionId": str(redemption.id),
                "rewardTitle": redemption.reward_title,
                "points": result.points_refunded,
                "newPointsBalance": result.balance,
                "message": f"{result.points_refunded} points refunded - reward expired",
            })
        except Exception as e:
            logger.error(f"Error sending refund notification for {redemption.id}: {e}")

        if self.on_refund is not None:
            try:
                await self.on_refund(result)
            except Exception as e:
                logger.error(f"Error in refund callback for {redemption.id}: {e}")
