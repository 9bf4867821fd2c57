"""결제 생성/확인 서비스.

Razorpay 흐름:
1. pay-razor: 요금제 검증 -> pending 트랜잭션 저장 -> 게이트웨이 주문 생성 (receipt = 트랜잭션 id)
2. verify-razor: 주문 상태 조회 -> paid 이면 BalanceLedger.apply_top_up(receipt)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import Depends

from ..config import load_ledger_config
from ..exceptions import GatewayError, NotFoundError, PaymentNotCompletedError
from ..models.transaction import Transaction, resolve_plan
from ..repositories.interfaces import (
    TransactionRepositoryInterface,
    UserRepositoryInterface,
)
from .balance_ledger import BalanceLedger, TopUpResult, get_balance_ledger
from .dependencies import get_transaction_repository, get_user_repository
from .payment_gateway import (
    ORDER_STATUS_PAID,
    GatewayOrder,
    PaymentGatewayInterface,
    get_payment_gateway,
)


logger = logging.getLogger(__name__)

# 게이트웨이는 최소 통화 단위(paise 등)로 금액을 받는다.
MINOR_UNITS_PER_UNIT = 100


@dataclass(slots=True)
class PaymentIntent:
    order: GatewayOrder
    transaction_id: str


class PaymentService:
    def __init__(
        self,
        user_repo: UserRepositoryInterface,
        transaction_repo: TransactionRepositoryInterface,
        ledger: BalanceLedger,
        gateway: PaymentGatewayInterface,
        *,
        currency: str = "INR",
    ) -> None:
        self._user_repo = user_repo
        self._transaction_repo = transaction_repo
        self._ledger = ledger
        self._gateway = gateway
        self._currency = currency

    def create_payment_intent(self, clerk_id: str, plan_id: str) -> PaymentIntent:
        # 요금제 검증은 어떤 쓰기보다 먼저 한다 (잘못된 planId 로 트랜잭션이 남지 않도록).
        plan = resolve_plan(plan_id)

        if not self._user_repo.exists(clerk_id):
            raise NotFoundError(f"User not found (clerk_id={clerk_id})")

        now = datetime.now(timezone.utc)
        tx = self._transaction_repo.create(
            Transaction(
                clerk_id=clerk_id,
                plan=plan.plan,
                credits=plan.credits,
                amount=plan.price,
                currency=self._currency,
                payment=False,
                date=now,
                created_at=now,
                updated_at=now,
            )
        )
        assert tx.id is not None

        order = self._gateway.create_order(
            amount=plan.price * MINOR_UNITS_PER_UNIT,
            currency=self._currency,
            receipt=tx.id,
        )
        self._transaction_repo.set_order_id(tx.id, order.id)

        logger.info(
            "created payment intent transaction_id=%s order_id=%s plan=%s",
            tx.id,
            order.id,
            plan.plan,
            extra={"transaction_id": tx.id, "order_id": order.id, "clerk_id": clerk_id},
        )
        return PaymentIntent(order=order, transaction_id=tx.id)

    def verify_payment(self, order_id: str) -> TopUpResult:
        """주문이 paid 면 크레딧을 반영한다. 이미 반영된 주문이면 AlreadyAppliedError."""

        order = self._gateway.fetch_order(order_id)
        if order.status != ORDER_STATUS_PAID:
            raise PaymentNotCompletedError(order_id, order.status)
        if not order.receipt:
            raise GatewayError(f"paid order has no receipt (order_id={order_id})")

        return self._ledger.apply_top_up(order.receipt)


def get_payment_service(
    user_repo: UserRepositoryInterface = Depends(get_user_repository),
    transaction_repo: TransactionRepositoryInterface = Depends(
        get_transaction_repository
    ),
    ledger: BalanceLedger = Depends(get_balance_ledger),
    gateway: PaymentGatewayInterface = Depends(get_payment_gateway),
) -> PaymentService:
    """FastAPI DI용 PaymentService 팩토리."""

    return PaymentService(
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        ledger=ledger,
        gateway=gateway,
        currency=load_ledger_config().currency,
    )
