"""
Health check endpoints

PostgreSQL держит баллы и погашения, Redis - лимиты и ленту изменений;
без любого из них принимать погашения и рефералов нельзя.
"""
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from shared.database import get_session
from shared.redis_client import get_redis

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "Dumpling Rewards API"


async def check_ledger_store(session: AsyncSession) -> Tuple[bool, Optional[str]]:
    """Хранилище баллов и погашений отвечает на запросы"""
    try:
        result = await session.execute(text("SELECT 1"))
        result.scalar()
        return True, None
    except Exception as e:
        logger.error(f"Ledger store health check failed: {e}")
        return False, str(e)


async def check_limiter_and_feed(redis_client: redis.Redis) -> Tuple[bool, Optional[str]]:
    """Redis для rate limit и ленты изменений отвечает на PING"""
    try:
        await redis_client.ping()
        return True, None
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False, str(e)


def _component(name: str, healthy: bool, error: Optional[str], response: Response) -> dict:
    if healthy:
        return {"status": "healthy", "service": name}

    response.status_code = 503
    return {"status": "unhealthy", "service": name, "error": error}


@router.get("")
async def health_check():
    """Процесс жив"""
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/db")
async def health_check_db(response: Response, session: AsyncSession = Depends(get_session)):
    healthy, error = await check_ledger_store(session)
    return _component("postgresql", healthy, error, response)


@router.get("/redis")
async def health_check_redis(response: Response, redis_client: redis.Redis = Depends(get_redis)):
    healthy, error = await check_limiter_and_feed(redis_client)
    return _component("redis", healthy, error, response)


@router.get("/all")
async def health_check_all(
    response: Response,
    session: AsyncSession = Depends(get_session),
    redis_client: redis.Redis = Depends(get_redis)
):
    """
    Готовность сервиса: 503, если недоступно хотя бы одно хранилище
    """
    checks = {
        "postgresql": await check_ledger_store(session),
        "redis": await check_limiter_and_feed(redis_client),
    }

    services = {
        name: "healthy" if healthy else f"unhealthy: {error}"
        for name, (healthy, error) in checks.items()
    }
    status = "healthy" if all(healthy for healthy, _ in checks.values()) else "unhealthy"

    if status == "unhealthy":
        response.status_code = 503

    return {"status": status, "service": SERVICE_NAME, "services": services}
