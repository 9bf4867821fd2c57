"""크레딧 잔액 원장.

webhook(user.created) 경로와 결제 확인 경로가 같은 credit_balance 필드를 바꾸므로,
모든 변경은 조건부 원자 연산($inc + 조건 필터)으로만 수행한다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends
from pymongo.client_session import ClientSession

from common.mongo.client import get_transactions

from ..config import load_ledger_config
from ..exceptions import (
    AlreadyAppliedError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from ..models.user import User
from ..repositories.interfaces import (
    TransactionRepositoryInterface,
    TransactionRunnerInterface,
    UserRepositoryInterface,
)
from .dependencies import get_transaction_repository, get_user_repository


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TopUpResult:
    transaction_id: str
    clerk_id: str
    credits: int
    new_balance: int


class BalanceLedger:
    """크레딧 잔액 변경 비즈니스 로직."""

    def __init__(
        self,
        user_repo: UserRepositoryInterface,
        transaction_repo: TransactionRepositoryInterface,
        transactions: TransactionRunnerInterface,
        *,
        default_credit_balance: int = 5,
    ) -> None:
        if default_credit_balance < 0:
            raise ValueError("default credit balance must be non-negative")
        self._user_repo = user_repo
        self._transaction_repo = transaction_repo
        self._transactions = transactions
        self._default_credit_balance = default_credit_balance

    def grant_initial_credits(self, user: User) -> User:
        """신규 유저 레코드에 가입 크레딧을 채운다. 생성 문서에 한 번만 적용된다."""

        return user.model_copy(update={"credit_balance": self._default_credit_balance})

    def get_balance(self, clerk_id: str) -> int:
        user = self._user_repo.find_by_clerk_id(clerk_id)
        if user is None:
            raise NotFoundError(f"User not found (clerk_id={clerk_id})")
        return user.credit_balance

    def apply_top_up(self, transaction_id: str, amount: int | None = None) -> TopUpResult:
        """결제 트랜잭션의 크레딧을 유저 잔액에 정확히 한 번 반영한다.

        - amount 가 None 이면 트랜잭션에 기록된 credits 를 사용한다.
        - payment 플래그 compare-and-set 과 잔액 $inc 를 하나의 스토어 트랜잭션으로 묶는다.
        - 이미 반영된 트랜잭션이면 AlreadyAppliedError (호출자는 정상 응답으로 취급한다).
        """

        if amount is not None and amount < 0:
            raise ValidationError(f"top-up amount must be non-negative: {amount}")

        def _apply(session: ClientSession | None) -> tuple[User, int]:
            tx = self._transaction_repo.find_by_id(transaction_id, session=session)
            if tx is None:
                raise NotFoundError(f"Transaction not found (id={transaction_id})")
            if tx.payment:
                raise AlreadyAppliedError(transaction_id)

            credits = tx.credits if amount is None else amount

            # CAS 전에 유저 존재를 확인해서, 트랜잭션 없이 돌 때도 유저가 없는
            # 결제가 applied 로 바뀌지 않게 한다.
            if not self._user_repo.exists(tx.clerk_id, session=session):
                raise NotFoundError(f"User not found (clerk_id={tx.clerk_id})")

            if self._transaction_repo.mark_payment_applied(
                transaction_id, session=session
            ) is None:
                raise AlreadyAppliedError(transaction_id)

            user = self._user_repo.increment_balance(
                tx.clerk_id, credits, session=session
            )
            if user is None:
                raise NotFoundError(f"User not found (clerk_id={tx.clerk_id})")
            return user, credits

        # write conflict 로 재실행되면 다른 요청이 먼저 반영한 결제는
        # 재실행 시 payment=true 로 읽혀 AlreadyAppliedError 가 된다.
        user, credits = self._transactions.run("apply_top_up", _apply)
        logger.info(
            "applied top-up transaction_id=%s clerk_id=%s credits=%d balance=%d",
            transaction_id,
            user.clerk_id,
            credits,
            user.credit_balance,
            extra={"transaction_id": transaction_id, "clerk_id": user.clerk_id},
        )
        return TopUpResult(
            transaction_id=transaction_id,
            clerk_id=user.clerk_id,
            credits=credits,
            new_balance=user.credit_balance,
        )

    def deduct_credits(self, clerk_id: str, amount: int = 1) -> int:
        """크레딧을 차감하고 남은 잔액을 반환한다. 잔액은 음수가 되지 않는다."""

        if amount <= 0:
            raise ValidationError(f"deduct amount must be positive: {amount}")

        user = self._user_repo.deduct_balance(clerk_id, amount)
        if user is not None:
            return user.credit_balance

        if not self._user_repo.exists(clerk_id):
            raise NotFoundError(f"User not found (clerk_id={clerk_id})")
        raise InsufficientCreditsError(
            f"Insufficient credits (clerk_id={clerk_id} requested={amount})"
        )


def get_balance_ledger(
    user_repo: UserRepositoryInterface = Depends(get_user_repository),
    transaction_repo: TransactionRepositoryInterface = Depends(
        get_transaction_repository
    ),
    transactions: TransactionRunnerInterface = Depends(get_transactions),
) -> BalanceLedger:
    """FastAPI DI용 BalanceLedger 팩토리."""

    config = load_ledger_config()
    return BalanceLedger(
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        transactions=transactions,
        default_credit_balance=config.default_credit_balance,
    )
