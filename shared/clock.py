"""
Время сервиса: naive UTC, как хранится в колонках DateTime
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
