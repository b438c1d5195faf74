"""
Утилиты для валидации входных данных
"""
import logging
import re
import uuid
from typing import Tuple

from shared.config import REWARD_CATALOG, REFERRAL_CODE_ALPHABET, REFERRAL_CODE_LENGTH

logger = logging.getLogger(__name__)

# Максимальная длина user id (Firebase uid и аналоги)
MAX_USER_ID_LENGTH = 128

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]+$")


class ValidationError(Exception):
    """Ошибка валидации"""

    def __init__(self, message: str, error_code: str = "validation_error"):
        super().__init__(message)
        self.error_code = error_code


def validate_user_id(user_id: str) -> Tuple[bool, str]:
    """
    Валидация идентификатора пользователя

    Returns:
        (valid, error_message)
    """
    if not user_id or not user_id.strip():
        return False, "User id is required"

    if len(user_id) > MAX_USER_ID_LENGTH:
        return False, f"User id is too long (max {MAX_USER_ID_LENGTH} characters)"

    if not _USER_ID_RE.match(user_id):
        return False, "User id contains invalid characters"

    return True, ""


def validate_reward_id(reward_id: str) -> Tuple[bool, str]:
    """
    Проверка, что награда есть в каталоге
    """
    if not reward_id or reward_id not in REWARD_CATALOG:
        return False, f"Unknown reward: {reward_id!r}"

    return True, ""


def normalize_referral_code(code: str) -> str:
    """
    Привести реферальный код к каноническому виду (верхний регистр, без пробелов)

    Raises:
        ValidationError: код пустой или содержит недопустимые символы
    """
    normalized = "".join((code or "").split()).upper()

    if len(normalized) != REFERRAL_CODE_LENGTH:
        raise ValidationError(
            f"Referral code must be {REFERRAL_CODE_LENGTH} characters",
            error_code="invalid_code"
        )

    if any(char not in REFERRAL_CODE_ALPHABET for char in normalized):
        raise ValidationError("Referral code contains invalid characters", error_code="invalid_code")

    return normalized


def parse_redemption_id(redemption_id: str) -> uuid.UUID:
    """
    Разобрать id погашения

    Raises:
        ValidationError: id не является UUID
    """
    try:
        return uuid.UUID(str(redemption_id))
    except (ValueError, AttributeError):
        raise ValidationError(f"Invalid redemption id: {redemption_id!r}", error_code="invalid_redemption_id")
