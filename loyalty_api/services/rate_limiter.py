"""
Rate limiter со скользящим окном на Redis sorted set

Ключ: rate_limit:<action>:<user_id>, значения - отметки времени запросов (мс).
Очистка окна, добавление, подсчёт и TTL выполняются одной транзакцией MULTI/EXEC,
поэтому решение "пропустить / отказать" атомарно для параллельных запросов.
"""
import logging
import time
import uuid
from typing import Callable, Optional

import redis.asyncio as redis

from shared.redis_client import get_redis

logger = logging.getLogger(__name__)

# Действия с лимитом
ACTION_REFERRAL_CREATE = "referral_create"
ACTION_REFERRAL_ACCEPT = "referral_accept"


class RateLimiter:
    """Скользящее окно: не больше limit вызовов за любой интервал window_seconds"""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time
    ):
        self.redis_client = redis_client
        self.clock = clock

    async def _get_client(self):
        if not self.redis_client:
            self.redis_client = await get_redis()
        return self.redis_client

    @staticmethod
    def key_for(user_id: str, action: str) -> str:
        return f"rate_limit:{action}:{user_id}"

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        """
        Зарегистрировать вызов и решить, укладывается ли он в лимит

        Returns:
            True если вызов разрешён
        """
        client = await self._get_client()

        now_ms = int(self.clock() * 1000)
        window_start = now_ms - window_seconds * 1000
        member = f"{now_ms}:{uuid.uuid4().hex}"

        async with client.pipeline(transaction=True) as pipe:
            # окно замкнутое: запись ровно window_seconds назад ещё считается
            pipe.zremrangebyscore(key, 0, window_start - 1)
            pipe.zadd(key, {member: now_ms})
            pipe.zcard(key)
            pipe.pexpire(key, window_seconds * 1000)
            _, _, count, _ = await pipe.execute()

        if count > limit:
            # отказ не занимает место в окне
            await client.zrem(key, member)
            logger.warning(f"Rate limit exceeded for {key}: {count - 1}/{limit} in {window_seconds}s")
            return False

        logger.debug(f"Rate limit {key}: {count}/{limit}")
        return True

    async def check(self, user_id: str, action: str, limit: int, window_seconds: int) -> bool:
        """
        allow() для пары (пользователь, действие)
        """
        return await self.allow(self.key_for(user_id, action), limit, window_seconds)

    async def reset(self, user_id: str, action: str):
        """
        Сбросить окно (админка)
        """
        client = await self._get_client()
        await client.delete(self.key_for(user_id, action))


# Общий экземпляр
rate_limiter = RateLimiter()
