"""
Зависимости FastAPI: текущий пользователь, общие сервисы
"""
import logging

from fastapi import Header, HTTPException

from shared.config import ADMIN_IDS, STAFF_IDS
from shared.redis_client import RedisChangeFeed, redemption_feed
from shared.validation import validate_user_id
from loyalty_api.services.rate_limiter import RateLimiter, rate_limiter
from loyalty_api.services.refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)

# Общий координатор возвратов
refund_coordinator = RefundCoordinator()


async def get_current_user_id(x_user_id: str = Header(default="")) -> str:
    """
    Идентификатор пользователя из заголовка X-User-Id
    """
    valid, error = validate_user_id(x_user_id)
    if not valid:
        raise HTTPException(status_code=401, detail=error)
    return x_user_id


async def get_admin_user_id(x_user_id: str = Header(default="")) -> str:
    """
    Проверка, является ли пользователь админом
    """
    user_id = await get_current_user_id(x_user_id)
    if user_id not in ADMIN_IDS:
        logger.warning(f"Non-admin user {user_id} tried to access admin endpoint")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id


async def get_staff_user_id(x_user_id: str = Header(default="")) -> str:
    """
    Проверка, является ли пользователь сотрудником кассы (админы тоже проходят)
    """
    user_id = await get_current_user_id(x_user_id)
    if user_id not in STAFF_IDS and user_id not in ADMIN_IDS:
        logger.warning(f"Non-staff user {user_id} tried to consume a redemption")
        raise HTTPException(status_code=403, detail="Staff access required")
    return user_id


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def get_redemption_feed() -> RedisChangeFeed:
    return redemption_feed


def get_refund_coordinator() -> RefundCoordinator:
    return refund_coordinator
