"""
Утилита для отправки уведомлений админам
"""
import logging
from typing import Awaitable, Callable, Optional
from shared.config import ADMIN_IDS

logger = logging.getLogger(__name__)

SendFunc = Callable[[str, str], Awaitable[None]]


async def notify_admin(message: str, level: str = "error", send_func: Optional[SendFunc] = None) -> int:
    """
    Отправить уведомление всем админам

    Args:
        message: Текст уведомления
        level: Уровень (info, warning, error, critical)
        send_func: Функция для отправки сообщения (async callable: admin_id, text)

    Returns:
        Количество админов, которым ушло уведомление
    """
    if not ADMIN_IDS:
        logger.warning(f"ADMIN_IDS is empty, cannot send notification: {message}")
        return 0

    if send_func is None:
        logger.warning(f"send_func not provided, cannot send notification: {message}")
        return 0

    formatted_message = f"[{level.upper()}] {message}"

    sent = 0
    for admin_id in ADMIN_IDS:
        try:
            await send_func(admin_id, formatted_message)
            sent += 1
        except Exception as e:
            logger.error(f"Failed to notify admin {admin_id}: {e}")

    return sent
