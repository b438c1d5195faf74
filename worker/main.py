"""
Worker для сверки просроченных погашений
"""
import asyncio
import logging
import sys
from pathlib import Path

# Добавляем корневую директорию в путь
sys.path.insert(0, str(Path(__file__).parent.parent))

from shared.database import init_db, close_db
from shared.redis_client import close_redis
from shared.config import LOG_LEVEL, LOG_FORMAT, DATA_DIR
from worker.reconciler import Reconciler

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "worker.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


class Worker:
    """Worker с периодической сверкой возвратов"""

    def __init__(self):
        self.reconciler = Reconciler()

    async def start(self):
        """Запуск worker"""
        logger.info("🚀 Worker started")

        # Инициализация БД
        await init_db()
        logger.info("✅ Database initialized")

        try:
            await self.reconciler.start()
        finally:
            await self.cleanup()

    async def cleanup(self):
        """Очистка ресурсов"""
        logger.info("🧹 Cleaning up...")

        self.reconciler.stop()

        await close_db()
        await close_redis()
        logger.info("✅ Worker stopped")

    def stop(self):
        """Остановка worker"""
        self.reconciler.stop()


async def run():
    """Главная функция"""
    worker = Worker()

    try:
        await worker.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down worker...")
        worker.stop()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
