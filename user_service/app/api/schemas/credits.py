from __future__ import annotations

from pydantic import BaseModel, Field


class CreditsResponse(BaseModel):
    success: bool = True
    credits: int


class ConsumeCreditsRequest(BaseModel):
    """크레딧 차감 요청 (이미지 처리 1건당 기본 1)."""

    amount: int = Field(default=1, gt=0)


class ConsumeCreditsResponse(BaseModel):
    success: bool = True
    credits: int
