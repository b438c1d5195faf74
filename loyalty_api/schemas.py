"""
Pydantic схемы запросов
"""
from typing import Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


class RedeemRewardRequest(BaseModel):
    rewardId: str = Field(min_length=1, max_length=64)


class AcceptReferralRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    deviceId: Optional[str] = Field(default=None, max_length=128)


class AdminAdjustPointsRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=128)
    delta: int
    reason: Optional[str] = Field(default=None, max_length=255)


def error_response(status_code: int, error_code: str, message: str) -> JSONResponse:
    """
    Ответ с кодом нарушенного правила, чтобы клиент мог объяснить отказ
    """
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "errorCode": error_code, "error": message}
    )
