from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from common.mongo.errors import TransactionConflictError
from user_service.app.exceptions import (
    AlreadyAppliedError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from user_service.app.models.transaction import Plan, Transaction
from user_service.app.services.balance_ledger import BalanceLedger
from user_service.tests.fakes import (
    FakeTransactionRepository,
    FakeTransactionRunner,
    FakeUserRepository,
    build_user,
)


@dataclass
class LedgerFixture:
    ledger: BalanceLedger
    user_repo: FakeUserRepository
    transaction_repo: FakeTransactionRepository
    runner: FakeTransactionRunner


def _build_fixture() -> LedgerFixture:
    user_repo = FakeUserRepository()
    transaction_repo = FakeTransactionRepository()
    runner = FakeTransactionRunner()
    ledger = BalanceLedger(
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        transactions=runner,
        default_credit_balance=5,
    )
    return LedgerFixture(
        ledger=ledger,
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        runner=runner,
    )


def _pending_transaction(
    fixture: LedgerFixture, clerk_id: str = "user_1", credits: int = 100
) -> str:
    now = datetime.now(timezone.utc)
    tx = fixture.transaction_repo.create(
        Transaction(
            clerk_id=clerk_id,
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


def test_grant_initial_credits_sets_default_balance() -> None:
    fixture = _build_fixture()

    user = fixture.ledger.grant_initial_credits(build_user(credit_balance=0))

    assert user.credit_balance == 5


def test_apply_top_up_adds_transaction_credits() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user())
    tx_id = _pending_transaction(fixture)

    result = fixture.ledger.apply_top_up(tx_id)

    assert result.new_balance == 105
    assert result.credits == 100
    assert fixture.transaction_repo.transactions[tx_id].payment is True
    assert fixture.runner.operations == ["apply_top_up"]


def test_apply_top_up_twice_changes_balance_once() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user())
    tx_id = _pending_transaction(fixture)
    fixture.ledger.apply_top_up(tx_id)

    with pytest.raises(AlreadyAppliedError):
        fixture.ledger.apply_top_up(tx_id)

    assert fixture.ledger.get_balance("user_1") == 105


def test_concurrent_top_ups_on_distinct_transactions_all_apply() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user())
    amounts = [10 * (index + 1) for index in range(10)]
    tx_ids = [_pending_transaction(fixture, credits=amount) for amount in amounts]
    barrier = threading.Barrier(len(tx_ids))

    def top_up(tx_id: str) -> None:
        barrier.wait()
        fixture.ledger.apply_top_up(tx_id)

    threads = [threading.Thread(target=top_up, args=(tx_id,)) for tx_id in tx_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert fixture.ledger.get_balance("user_1") == 5 + sum(amounts)


def test_apply_top_up_rejects_negative_amount() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user())
    tx_id = _pending_transaction(fixture)

    with pytest.raises(ValidationError):
        fixture.ledger.apply_top_up(tx_id, amount=-1)

    assert fixture.transaction_repo.transactions[tx_id].payment is False


def test_apply_top_up_for_missing_user_keeps_transaction_pending() -> None:
    fixture = _build_fixture()
    tx_id = _pending_transaction(fixture, clerk_id="ghost")

    with pytest.raises(NotFoundError):
        fixture.ledger.apply_top_up(tx_id)

    assert fixture.transaction_repo.transactions[tx_id].payment is False


def test_apply_top_up_unknown_transaction() -> None:
    fixture = _build_fixture()

    with pytest.raises(NotFoundError):
        fixture.ledger.apply_top_up("tx_missing")


def test_exhausted_transaction_conflict_leaves_balance_untouched() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user())
    tx_id = _pending_transaction(fixture)
    fixture.runner.fail_with = TransactionConflictError("write conflict")

    with pytest.raises(TransactionConflictError):
        fixture.ledger.apply_top_up(tx_id)

    assert fixture.ledger.get_balance("user_1") == 5


def test_deduct_credits_returns_remaining_balance() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user(credit_balance=2))

    assert fixture.ledger.deduct_credits("user_1") == 1


def test_deduct_credits_never_goes_negative() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user(credit_balance=1))

    with pytest.raises(InsufficientCreditsError):
        fixture.ledger.deduct_credits("user_1", amount=2)

    assert fixture.ledger.get_balance("user_1") == 1


def test_deduct_credits_for_unknown_user() -> None:
    fixture = _build_fixture()

    with pytest.raises(NotFoundError):
        fixture.ledger.deduct_credits("ghost")


def test_deduct_credits_rejects_non_positive_amount() -> None:
    fixture = _build_fixture()
    fixture.user_repo.seed(build_user())

    with pytest.raises(ValidationError):
        fixture.ledger.deduct_credits("user_1", amount=0)
