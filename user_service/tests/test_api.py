from __future__ import annotations

import base64
import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import jwt
import pytest
from fastapi.testclient import TestClient

from common.mongo.errors import TransactionConflictError
from user_service.app.api.deps import get_signature_verifier
from user_service.app.main import app
from user_service.app.services.balance_ledger import BalanceLedger, get_balance_ledger
from user_service.app.services.idempotency_tracker import (
    EventStatus,
    IdempotencyTracker,
    get_idempotency_tracker,
)
from user_service.app.services.payment_service import PaymentService, get_payment_service
from user_service.app.services.signature_verifier import SignatureVerifier
from user_service.app.services.webhook_reconciler import (
    WebhookReconciler,
    get_webhook_reconciler,
)
from user_service.tests.fakes import (
    FakePaymentGateway,
    FakeTombstoneRepository,
    FakeTransactionRepository,
    FakeTransactionRunner,
    FakeUserRepository,
    build_user,
)


SECRET = "whsec_" + base64.b64encode(b"clerk-test-signing-secret").decode("ascii")
NOW = 1_700_000_000
TOKEN_KEY = "local-development-signing-key-0123456789"


@dataclass
class ApiFixture:
    client: TestClient
    verifier: SignatureVerifier
    user_repo: FakeUserRepository
    transaction_repo: FakeTransactionRepository
    gateway: FakePaymentGateway
    tracker: IdempotencyTracker
    runner: FakeTransactionRunner


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch) -> Iterator[ApiFixture]:
    monkeypatch.delenv("CLERK_JWT_KEY", raising=False)
    monkeypatch.setenv("CLERK_ALLOW_UNVERIFIED_TOKENS", "true")

    user_repo = FakeUserRepository()
    transaction_repo = FakeTransactionRepository()
    runner = FakeTransactionRunner()
    gateway = FakePaymentGateway()
    tracker = IdempotencyTracker()
    verifier = SignatureVerifier(SECRET, clock=lambda: NOW)
    ledger = BalanceLedger(
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        transactions=runner,
    )
    reconciler = WebhookReconciler(
        user_repo=user_repo,
        tombstone_repo=FakeTombstoneRepository(),
        transactions=runner,
        ledger=ledger,
        tracker=tracker,
        sleep=lambda _: None,
    )
    payments = PaymentService(
        user_repo=user_repo,
        transaction_repo=transaction_repo,
        ledger=ledger,
        gateway=gateway,
    )

    app.dependency_overrides[get_signature_verifier] = lambda: verifier
    app.dependency_overrides[get_idempotency_tracker] = lambda: tracker
    app.dependency_overrides[get_webhook_reconciler] = lambda: reconciler
    app.dependency_overrides[get_balance_ledger] = lambda: ledger
    app.dependency_overrides[get_payment_service] = lambda: payments
    try:
        yield ApiFixture(
            client=TestClient(app),
            verifier=verifier,
            user_repo=user_repo,
            transaction_repo=transaction_repo,
            gateway=gateway,
            tracker=tracker,
            runner=runner,
        )
    finally:
        app.dependency_overrides.clear()


def _signed_headers(
    verifier: SignatureVerifier, body: bytes, event_id: str = "msg_1"
) -> dict[str, str]:
    return {
        "svix-id": event_id,
        "svix-timestamp": str(NOW),
        "svix-signature": verifier.sign(event_id, NOW, body),
        "content-type": "application/json",
    }


def _created_body(clerk_id: str = "user_1") -> bytes:
    payload: dict[str, Any] = {
        "type": "user.created",
        "data": {
            "id": clerk_id,
            "email_addresses": [{"id": "e1", "email_address": "a@x.com"}],
            "primary_email_address_id": "e1",
            "first_name": "Ada",
        },
    }
    return json.dumps(payload).encode("utf-8")


def _token(clerk_id: str = "user_1") -> dict[str, str]:
    return {"token": jwt.encode({"clerkId": clerk_id}, TOKEN_KEY, algorithm="HS256")}


def test_health(api: ApiFixture) -> None:
    response = api.client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_webhook_without_headers_is_rejected_before_store(api: ApiFixture) -> None:
    response = api.client.post("/api/user/webhooks", content=_created_body())

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "svix-id" in response.json()["message"]
    assert api.user_repo.calls == []
    assert len(api.tracker) == 0


def test_webhook_with_bad_signature_is_unauthorized(api: ApiFixture) -> None:
    headers = _signed_headers(api.verifier, b"{}")

    response = api.client.post("/api/user/webhooks", content=_created_body(), headers=headers)

    assert response.status_code == 401
    assert api.user_repo.users == {}


def test_webhook_with_malformed_body_is_rejected(api: ApiFixture) -> None:
    body = b'{"type": "user.created"}'

    response = api.client.post(
        "/api/user/webhooks", content=body, headers=_signed_headers(api.verifier, body)
    )

    assert response.status_code == 400
    assert api.user_repo.calls == []


def test_webhook_created_is_reconciled_in_background(api: ApiFixture) -> None:
    body = _created_body()

    response = api.client.post(
        "/api/user/webhooks", content=body, headers=_signed_headers(api.verifier, body)
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Webhook received"}
    user = api.user_repo.users["user_1"]
    assert user.email == "a@x.com"
    assert user.credit_balance == 5
    assert api.tracker.get("msg_1").status == EventStatus.COMPLETED


def test_webhook_redelivery_is_acknowledged_once(api: ApiFixture) -> None:
    body = _created_body()
    headers = _signed_headers(api.verifier, body)

    api.client.post("/api/user/webhooks", content=body, headers=headers)
    inserts_after_first = api.user_repo.calls.count("insert")
    response = api.client.post("/api/user/webhooks", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["message"] == "Event already processed"
    assert api.user_repo.calls.count("insert") == inserts_after_first
    assert list(api.user_repo.users) == ["user_1"]


def test_get_credits_requires_token(api: ApiFixture) -> None:
    response = api.client.get("/api/user/credits")

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_unsigned_token_is_rejected_without_jwt_key_or_dev_flag(
    api: ApiFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("CLERK_ALLOW_UNVERIFIED_TOKENS")
    api.user_repo.seed(build_user(credit_balance=7))

    response = api.client.get("/api/user/credits", headers=_token())

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid token"}


def test_get_credits_returns_balance(api: ApiFixture) -> None:
    api.user_repo.seed(build_user(credit_balance=7))

    response = api.client.get("/api/user/credits", headers=_token())

    assert response.status_code == 200
    assert response.json() == {"success": True, "credits": 7}


def test_get_credits_for_unknown_user(api: ApiFixture) -> None:
    response = api.client.get("/api/user/credits", headers=_token("ghost"))

    assert response.status_code == 404


def test_consume_credits_with_insufficient_balance(api: ApiFixture) -> None:
    api.user_repo.seed(build_user(credit_balance=1))

    response = api.client.post(
        "/api/user/credits/consume", json={"amount": 3}, headers=_token()
    )

    assert response.status_code == 402
    assert api.user_repo.users["user_1"].credit_balance == 1


def test_pay_razor_rejects_unknown_plan(api: ApiFixture) -> None:
    api.user_repo.seed(build_user())

    response = api.client.post(
        "/api/user/pay-razor", json={"planId": "Gold"}, headers=_token()
    )

    assert response.status_code == 400
    assert api.transaction_repo.transactions == {}


def test_pay_and_verify_flow(api: ApiFixture) -> None:
    api.user_repo.seed(build_user())

    created = api.client.post(
        "/api/user/pay-razor", json={"planId": "Basic"}, headers=_token()
    )
    assert created.status_code == 200
    order_id = created.json()["order"]["id"]
    assert created.json()["transactionId"] in api.transaction_repo.transactions
    api.gateway.mark_paid(order_id)

    verified = api.client.post(
        "/api/user/verify-razor", json={"razorpay_order_id": order_id}
    )
    again = api.client.post("/api/user/verify-razor", json={"razorpay_order_id": order_id})

    assert verified.status_code == 200
    assert verified.json()["newBalance"] == 105
    assert again.status_code == 200
    assert again.json() == {
        "success": True,
        "message": "Payment already processed",
        "newBalance": None,
    }
    assert api.user_repo.users["user_1"].credit_balance == 105


def test_verify_with_unresolved_transaction_conflict_is_unavailable(
    api: ApiFixture,
) -> None:
    api.user_repo.seed(build_user())
    created = api.client.post(
        "/api/user/pay-razor", json={"planId": "Basic"}, headers=_token()
    )
    order_id = created.json()["order"]["id"]
    api.gateway.mark_paid(order_id)
    api.runner.fail_with = TransactionConflictError("apply_top_up: WriteConflict")

    response = api.client.post(
        "/api/user/verify-razor", json={"razorpay_order_id": order_id}
    )

    assert response.status_code == 503
    assert response.json() == {
        "success": False,
        "message": "Service temporarily unavailable",
    }
    assert api.user_repo.users["user_1"].credit_balance == 5
