from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId", min_length=1)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    order: dict[str, Any]
    transaction_id: str = Field(alias="transactionId")


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)


class VerifyPaymentResponse(BaseModel):
    """결제 확인 결과.

    이미 반영된 결제는 new_balance 없이 success=True 로 응답한다.
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    new_balance: int | None = Field(default=None, alias="newBalance")
