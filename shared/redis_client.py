"""
Redis клиент для лимитов и ленты изменений
"""
import logging
import json
from typing import AsyncIterator, Optional
import redis.asyncio as redis

from shared.config import REDIS_URL

logger = logging.getLogger(__name__)

# Событие подтверждения подписки
SUBSCRIBED = "subscribed"

# Глобальный Redis клиент
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """
    Получить Redis клиент
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("Redis client initialized")

    return _redis_client


async def close_redis():
    """
    Закрыть Redis соединение
    """
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")


class RedisChangeFeed:
    """
    Лента изменений на основе Redis Pub/Sub, один канал на пользователя
    """

    def __init__(self, prefix: str, redis_client: Optional[redis.Redis] = None):
        self.prefix = prefix
        self.redis_client = redis_client

    async def _get_client(self):
        if not self.redis_client:
            self.redis_client = await get_redis()
        return self.redis_client

    def channel(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    async def publish(self, user_id: str, event: dict) -> int:
        """
        Опубликовать событие в канал пользователя

        Returns:
            Количество подписчиков, получивших событие
        """
        client = await self._get_client()
        receivers = await client.publish(self.channel(user_id), json.dumps(event))
        logger.debug(f"Published {event.get('type')} to {self.channel(user_id)} ({receivers} receivers)")
        return receivers

    async def subscribe(self, user_id: str, announce: bool = False) -> AsyncIterator[dict]:
        """
        Подписаться на канал пользователя (асинхронный итератор событий)

        Args:
            announce: первым событием отдать {"type": "subscribed"}, как только Redis
                подтвердил подписку; всё, что опубликовано позже, уже не потеряется
        """
        client = await self._get_client()
        pubsub = client.pubsub()
        await pubsub.subscribe(self.channel(user_id))
        logger.info(f"Subscribed to {self.channel(user_id)}")

        try:
            async for message in pubsub.listen():
                if message.get("type") == "subscribe":
                    if announce:
                        yield {"type": SUBSCRIBED}
                    continue
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed event on {self.channel(user_id)}")
        finally:
            await pubsub.unsubscribe(self.channel(user_id))
            await pubsub.aclose()
            logger.info(f"Unsubscribed from {self.channel(user_id)}")


# Ленты изменений
redemption_feed = RedisChangeFeed("redemptions")
refund_feed = RedisChangeFeed("refunds")
