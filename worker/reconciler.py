"""
Периодическая сверка просроченных погашений

Клиент может так и не переподключиться после истечения срока награды,
поэтому worker сам находит просроченные записи без возврата и возвращает баллы.
"""
import asyncio
import logging
from typing import Optional

from shared.config import RECONCILE_INTERVAL, RECONCILE_BATCH_SIZE
from loyalty_api.services.refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Проверяет погашения с вышедшим сроком и без возврата
    """

    def __init__(
        self,
        coordinator: Optional[RefundCoordinator] = None,
        check_interval: int = RECONCILE_INTERVAL,
        batch_size: int = RECONCILE_BATCH_SIZE
    ):
        """
        Args:
            coordinator: координатор возвратов
            check_interval: Интервал проверки в секундах (по умолчанию 60)
            batch_size: Максимум записей за один проход
        """
        self.coordinator = coordinator or RefundCoordinator()
        self.check_interval = check_interval
        self.batch_size = batch_size
        self.running = False

    async def start(self):
        """Запуск сверки"""
        self.running = True
        logger.info("🔁 Reconciler started")

        while self.running:
            try:
                await self.run_once()
                await asyncio.sleep(self.check_interval)

            except Exception as e:
                logger.error(f"Error in reconciler loop: {e}", exc_info=True)
                await asyncio.sleep(self.check_interval)

    def stop(self):
        """Остановка сверки"""
        self.running = False
        logger.info("🔁 Reconciler stopped")

    async def run_once(self) -> int:
        """
        Один проход сверки

        Returns:
            Количество фактических возвратов
        """
        results = await self.coordinator.reconcile(limit=self.batch_size)
        refunded = sum(1 for result in results if result.refunded)

        if refunded:
            logger.info(f"Reconciliation refunded {refunded} of {len(results)} expired redemptions")

        return refunded
