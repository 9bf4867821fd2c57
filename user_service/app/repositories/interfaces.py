from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, TypeVar

from pymongo.client_session import ClientSession

from ..models.transaction import Transaction
from ..models.user import PatchOutcome, User, UserPatch


T = TypeVar("T")


class UserRepositoryInterface(Protocol):
    """UserRepository가 따라야 할 최소한의 계약.

    Service 레이어는 이 인터페이스에만 의존하고, 구체 구현(Mongo 등)은 몰라도 된다.
    모든 메서드는 트랜잭션 세션을 선택적으로 받는다 (None 이면 세션 없이 실행).
    """

    def find_by_clerk_id(
        self, clerk_id: str, session: ClientSession | None = None
    ) -> User | None:  # pragma: no cover - Protocol
        ...

    def exists(
        self, clerk_id: str, session: ClientSession | None = None
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def insert(
        self, user: User, session: ClientSession | None = None
    ) -> User:  # pragma: no cover - Protocol
        """유니크 인덱스 위반 시 DuplicateRecordError(field=clerk_id|email)."""
        ...

    def apply_patch(
        self,
        clerk_id: str,
        patch: UserPatch,
        event_id: str,
        session: ClientSession | None = None,
    ) -> PatchOutcome:  # pragma: no cover - Protocol
        ...

    def delete_by_clerk_id(
        self, clerk_id: str, session: ClientSession | None = None
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def increment_balance(
        self, clerk_id: str, amount: int, session: ClientSession | None = None
    ) -> User | None:  # pragma: no cover - Protocol
        ...

    def deduct_balance(
        self, clerk_id: str, amount: int, session: ClientSession | None = None
    ) -> User | None:  # pragma: no cover - Protocol
        """잔액이 amount 이상일 때만 차감한다. 유저가 없거나 잔액 부족이면 None."""
        ...


class TransactionRepositoryInterface(Protocol):
    """TransactionRepository가 따라야 할 최소한의 계약."""

    def create(
        self, tx: Transaction, session: ClientSession | None = None
    ) -> Transaction:  # pragma: no cover - Protocol
        ...

    def find_by_id(
        self, transaction_id: str, session: ClientSession | None = None
    ) -> Transaction | None:  # pragma: no cover - Protocol
        ...

    def set_order_id(
        self, transaction_id: str, order_id: str
    ) -> None:  # pragma: no cover - Protocol
        ...

    def mark_payment_applied(
        self, transaction_id: str, session: ClientSession | None = None
    ) -> Transaction | None:  # pragma: no cover - Protocol
        """payment=false 인 경우에만 true 로 바꾼다. 조건이 맞지 않으면 None."""
        ...


class UserTombstoneRepositoryInterface(Protocol):
    """삭제된 clerk_id 를 유예 기간 동안 기억한다 (delete 가 create 보다 먼저 도착하는 경우 대비)."""

    def put(
        self, clerk_id: str, grace_seconds: float, session: ClientSession | None = None
    ) -> None:  # pragma: no cover - Protocol
        ...

    def is_alive(
        self, clerk_id: str, session: ClientSession | None = None
    ) -> bool:  # pragma: no cover - Protocol
        ...


class TransactionRunnerInterface(Protocol):
    """여러 레포지토리 호출을 하나의 스토어 트랜잭션으로 묶는다 (common.mongo.client.MongoTransactions).

    callback 은 write conflict 시 처음부터 다시 실행될 수 있다.
    """

    def run(
        self, operation: str, callback: Callable[[ClientSession | None], T]
    ) -> T:  # pragma: no cover - Protocol
        ...
