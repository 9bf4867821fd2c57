"""Razorpay 결제 라우터."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from ..deps import get_current_clerk_id
from ..schemas.payments import (
    PaymentRequest,
    PaymentResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from ...exceptions import AlreadyAppliedError
from ...services.payment_service import PaymentService, get_payment_service


logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/pay-razor", response_model=PaymentResponse, summary="결제 주문 생성")
def create_payment(
    req: PaymentRequest,
    clerk_id: Annotated[str, Depends(get_current_clerk_id)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> PaymentResponse:
    intent = service.create_payment_intent(clerk_id, req.plan_id)
    return PaymentResponse(
        order=intent.order.model_dump(),
        transaction_id=intent.transaction_id,
    )


@router.post(
    "/verify-razor", response_model=VerifyPaymentResponse, summary="결제 확인 및 크레딧 반영"
)
def verify_payment(
    req: VerifyPaymentRequest,
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> VerifyPaymentResponse:
    try:
        result = service.verify_payment(req.razorpay_order_id)
    except AlreadyAppliedError as exc:
        logger.info(
            "payment already applied order_id=%s transaction_id=%s",
            req.razorpay_order_id,
            exc.transaction_id,
            extra={"order_id": req.razorpay_order_id},
        )
        return VerifyPaymentResponse(message="Payment already processed")

    return VerifyPaymentResponse(message="Credits Added", new_balance=result.new_balance)
