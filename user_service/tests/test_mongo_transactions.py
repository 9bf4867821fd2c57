"""MongoTransactions 재시도 동작.

세션/클라이언트 대역은 write conflict 를 흉내 낸다. 커밋되지 않은 트랜잭션이 잡고 있는
도큐먼트를 다른 세션이 쓰려고 하면 TransientTransactionError 라벨이 붙은
WriteConflict 가 나고, abort 시 그 세션의 쓰기는 되돌려진다.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
from pymongo.errors import OperationFailure

from common.mongo.client import (
    TRANSIENT_TRANSACTION_LABEL,
    UNKNOWN_COMMIT_RESULT_LABEL,
    MongoTransactions,
)
from common.mongo.errors import TransactionConflictError
from user_service.app.exceptions import AlreadyAppliedError
from user_service.app.models.transaction import Plan, Transaction
from user_service.app.models.user import User
from user_service.app.services.balance_ledger import BalanceLedger
from user_service.tests.fakes import (
    FakeTransactionRepository,
    FakeUserRepository,
    build_user,
)


def _write_conflict() -> OperationFailure:
    return OperationFailure(
        "WriteConflict error: this operation conflicted with another operation",
        code=112,
        details={"errorLabels": [TRANSIENT_TRANSACTION_LABEL]},
    )


class WriteLocks:
    """도큐먼트 키 -> 커밋 전 쓰기를 가진 세션."""

    def __init__(self) -> None:
        self.conflicts = 0
        self._owners: dict[tuple[str, str], object] = {}
        self._lock = threading.Lock()

    def claim(self, key: tuple[str, str], session: object) -> None:
        with self._lock:
            owner = self._owners.get(key)
            if owner is not None and owner is not session:
                self.conflicts += 1
                raise _write_conflict()
            self._owners[key] = session

    def release(self, session: object) -> None:
        with self._lock:
            for key in [k for k, owner in self._owners.items() if owner is session]:
                del self._owners[key]


class FakeSession:
    def __init__(self, client: FakeMongoClient) -> None:
        self._client = client
        self._undo: list[Callable[[], None]] = []
        self.in_transaction = False
        self.commit_attempts = 0
        self.aborted = 0

    def __enter__(self) -> FakeSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        # 세션 종료 시 진행 중인 트랜잭션은 abort 된다.
        if self.in_transaction:
            self.abort_transaction()

    def start_transaction(self) -> None:
        self.in_transaction = True

    def on_abort(self, undo: Callable[[], None]) -> None:
        self._undo.append(undo)

    def commit_transaction(self) -> None:
        self.commit_attempts += 1
        if self._client.commit_errors:
            raise self._client.commit_errors.pop(0)
        self._undo.clear()
        self._client.locks.release(self)
        self.in_transaction = False

    def abort_transaction(self) -> None:
        self.aborted += 1
        for undo in reversed(self._undo):
            undo()
        self._undo.clear()
        self._client.locks.release(self)
        self.in_transaction = False


class FakeMongoClient:
    def __init__(self, locks: WriteLocks | None = None) -> None:
        self.locks = locks or WriteLocks()
        self.commit_errors: list[Exception] = []
        self.sessions: list[FakeSession] = []
        self._lock = threading.Lock()

    def start_session(self) -> FakeSession:
        session = FakeSession(self)
        with self._lock:
            self.sessions.append(session)
        return session


class ConflictingUserRepository(FakeUserRepository):
    """increment_balance 가 유저 도큐먼트 쓰기 잠금을 잡는다."""

    def __init__(self, locks: WriteLocks, *, hold_seconds: float = 0.0) -> None:
        super().__init__()
        self._locks = locks
        self._hold_seconds = hold_seconds

    def increment_balance(
        self, clerk_id: str, amount: int, session: object = None
    ) -> User | None:
        assert isinstance(session, FakeSession)
        self._locks.claim(("users", clerk_id), session)
        user = super().increment_balance(clerk_id, amount)
        if user is not None:
            session.on_abort(
                lambda: FakeUserRepository.increment_balance(self, clerk_id, -amount)
            )
        if self._hold_seconds:
            time.sleep(self._hold_seconds)
        return user


class ConflictingTransactionRepository(FakeTransactionRepository):
    def __init__(self, locks: WriteLocks) -> None:
        super().__init__()
        self._locks = locks

    def mark_payment_applied(
        self, transaction_id: str, session: object = None
    ) -> Transaction | None:
        assert isinstance(session, FakeSession)
        self._locks.claim(("transactions", transaction_id), session)
        tx = super().mark_payment_applied(transaction_id)
        if tx is not None:
            session.on_abort(lambda: self._reset_payment(transaction_id))
        return tx

    def _reset_payment(self, transaction_id: str) -> None:
        tx = self.transactions[transaction_id]
        self.transactions[transaction_id] = tx.model_copy(update={"payment": False})


@dataclass
class ConflictFixture:
    ledger: BalanceLedger
    client: FakeMongoClient
    user_repo: ConflictingUserRepository
    transaction_repo: ConflictingTransactionRepository
    sleeps: list[float] = field(default_factory=list)


def _build_fixture(
    *,
    max_attempts: int = 5,
    hold_seconds: float = 0.0,
    sleep: Callable[[float], None] | None = None,
) -> ConflictFixture:
    locks = WriteLocks()
    client = FakeMongoClient(locks)
    user_repo = ConflictingUserRepository(locks, hold_seconds=hold_seconds)
    transaction_repo = ConflictingTransactionRepository(locks)
    sleeps: list[float] = []

    def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if sleep is not None:
            sleep(seconds)

    transactions = MongoTransactions(
        client,  # type: ignore[arg-type]
        enabled=True,
        timeout_seconds=5.0,
        max_attempts=max_attempts,
        backoff_seconds=0.001,
        sleep=record_sleep,
    )
    ledger = BalanceLedger(
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        transactions=transactions,
        default_credit_balance=5,
    )
    user_repo.seed(build_user())
    return ConflictFixture(
        ledger=ledger,
        client=client,
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        sleeps=sleeps,
    )


def _pending_transaction(fixture: ConflictFixture, credits: int = 100) -> str:
    now = datetime.now(timezone.utc)
    tx = fixture.transaction_repo.create(
        Transaction(
            clerk_id="user_1",
            plan=Plan.BASIC,
            credits=credits,
            amount=10,
            currency="INR",
            date=now,
            created_at=now,
            updated_at=now,
        )
    )
    assert tx.id is not None
    return tx.id


def _transactions(
    client: FakeMongoClient, **kwargs: object
) -> tuple[MongoTransactions, list[float]]:
    sleeps: list[float] = []
    options: dict[str, object] = {
        "enabled": True,
        "timeout_seconds": 5.0,
        "max_attempts": 3,
        "backoff_seconds": 0.01,
        "sleep": sleeps.append,
    }
    options.update(kwargs)
    return MongoTransactions(client, **options), sleeps  # type: ignore[arg-type]


def test_concurrent_top_ups_retry_write_conflicts_until_all_apply() -> None:
    fixture = _build_fixture(max_attempts=100, hold_seconds=0.005, sleep=time.sleep)
    amounts = [10 * (index + 1) for index in range(10)]
    tx_ids = [_pending_transaction(fixture, credits=amount) for amount in amounts]
    barrier = threading.Barrier(len(tx_ids))
    errors: list[Exception] = []

    def top_up(tx_id: str) -> None:
        barrier.wait()
        try:
            fixture.ledger.apply_top_up(tx_id)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=top_up, args=(tx_id,)) for tx_id in tx_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert fixture.client.locks.conflicts > 0
    assert fixture.user_repo.users["user_1"].credit_balance == 5 + sum(amounts)
    assert all(fixture.transaction_repo.transactions[tx_id].payment for tx_id in tx_ids)


def test_top_up_waits_out_an_in_flight_webhook_transaction() -> None:
    holder = object()
    fixture: ConflictFixture | None = None

    def release_holder(_: float) -> None:
        assert fixture is not None
        fixture.client.locks.release(holder)

    fixture = _build_fixture(sleep=release_holder)
    tx_id = _pending_transaction(fixture)
    # 다른 트랜잭션(user.updated 등)이 유저 도큐먼트를 잡고 있다.
    fixture.client.locks.claim(("users", "user_1"), holder)

    result = fixture.ledger.apply_top_up(tx_id)

    assert result.new_balance == 105
    assert fixture.sleeps == [0.001]
    first, second = fixture.client.sessions
    assert first.aborted == 1
    assert second.commit_attempts == 1
    assert fixture.transaction_repo.transactions[tx_id].payment is True


def test_rerun_after_conflict_sees_payment_applied_by_winner() -> None:
    winner = object()
    fixture: ConflictFixture | None = None
    tx_id = ""

    def winner_commits(_: float) -> None:
        # 경쟁 요청이 같은 결제를 먼저 반영하고 커밋했다.
        assert fixture is not None
        FakeTransactionRepository.mark_payment_applied(fixture.transaction_repo, tx_id)
        FakeUserRepository.increment_balance(fixture.user_repo, "user_1", 100)
        fixture.client.locks.release(winner)

    fixture = _build_fixture(sleep=winner_commits)
    tx_id = _pending_transaction(fixture)
    fixture.client.locks.claim(("users", "user_1"), winner)

    with pytest.raises(AlreadyAppliedError):
        fixture.ledger.apply_top_up(tx_id)

    assert fixture.user_repo.users["user_1"].credit_balance == 105
    assert fixture.transaction_repo.transactions[tx_id].payment is True


def test_transient_callback_errors_are_retried_with_backoff() -> None:
    client = FakeMongoClient()
    transactions, sleeps = _transactions(client)
    calls: list[object] = []

    def callback(session: object) -> str:
        calls.append(session)
        if len(calls) < 3:
            raise _write_conflict()
        return "done"

    assert transactions.run("user.updated", callback) == "done"
    assert len(calls) == 3
    assert sleeps == [0.01, 0.02]
    assert [session.aborted for session in client.sessions] == [1, 1, 0]
    assert client.sessions[-1].commit_attempts == 1


def test_exhausted_conflicts_raise_transaction_conflict_error() -> None:
    client = FakeMongoClient()
    transactions, sleeps = _transactions(client, max_attempts=3)
    calls: list[object] = []

    def callback(session: object) -> None:
        calls.append(session)
        raise _write_conflict()

    with pytest.raises(TransactionConflictError) as exc_info:
        transactions.run("user.deleted", callback)

    assert isinstance(exc_info.value.__cause__, OperationFailure)
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_unknown_commit_result_retries_commit_only() -> None:
    client = FakeMongoClient()
    client.commit_errors.append(
        OperationFailure(
            "commit timed out waiting for majority",
            code=91,
            details={"errorLabels": [UNKNOWN_COMMIT_RESULT_LABEL]},
        )
    )
    transactions, sleeps = _transactions(client)
    calls: list[object] = []

    result = transactions.run("apply_top_up", lambda session: calls.append(session) or 7)

    assert result == 7
    assert len(calls) == 1
    assert len(client.sessions) == 1
    assert client.sessions[0].commit_attempts == 2
    assert sleeps == []


def test_transient_commit_error_reruns_transaction() -> None:
    client = FakeMongoClient()
    client.commit_errors.append(_write_conflict())
    transactions, sleeps = _transactions(client)
    calls: list[object] = []

    transactions.run("user.created", lambda session: calls.append(session))

    assert len(calls) == 2
    assert sleeps == [0.01]


def test_non_transient_error_is_not_retried() -> None:
    client = FakeMongoClient()
    transactions, sleeps = _transactions(client)
    calls: list[object] = []

    def callback(session: object) -> None:
        calls.append(session)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        transactions.run("user.created", callback)

    assert len(calls) == 1
    assert client.sessions[0].aborted == 1
    assert sleeps == []


def test_disabled_transactions_run_without_session() -> None:
    client = FakeMongoClient()
    transactions, _ = _transactions(client, enabled=False)

    assert transactions.run("apply_top_up", lambda session: session) is None
    assert client.sessions == []
