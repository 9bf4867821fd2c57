from __future__ import annotations

import os
from dataclasses import dataclass


CLERK_WEBHOOK_SECRET = "CLERK_WEBHOOK_SECRET"
CLERK_WEBHOOK_TOLERANCE_SECONDS = "CLERK_WEBHOOK_TOLERANCE_SECONDS"
CLERK_JWT_KEY = "CLERK_JWT_KEY"
CLERK_ALLOW_UNVERIFIED_TOKENS = "CLERK_ALLOW_UNVERIFIED_TOKENS"
RAZORPAY_KEY_ID = "RAZORPAY_KEY_ID"
RAZORPAY_KEY_SECRET = "RAZORPAY_KEY_SECRET"
RAZORPAY_BASE_URL = "RAZORPAY_BASE_URL"
RAZORPAY_TIMEOUT_SECONDS = "RAZORPAY_TIMEOUT_SECONDS"
CURRENCY = "CURRENCY"
DEFAULT_CREDIT_BALANCE = "DEFAULT_CREDIT_BALANCE"
IDEMPOTENCY_RETENTION_SECONDS = "IDEMPOTENCY_RETENTION_SECONDS"
IDEMPOTENCY_MAX_ENTRIES = "IDEMPOTENCY_MAX_ENTRIES"
USER_TOMBSTONE_GRACE_SECONDS = "USER_TOMBSTONE_GRACE_SECONDS"


@dataclass(slots=True)
class WebhookConfig:
    secret: str
    tolerance_seconds: int = 300


@dataclass(slots=True)
class GatewayConfig:
    key_id: str
    key_secret: str
    currency: str = "INR"
    base_url: str = "https://api.razorpay.com/v1"
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class LedgerConfig:
    default_credit_balance: int = 5
    currency: str = "INR"


@dataclass(slots=True)
class ReconcilerConfig:
    idempotency_retention_seconds: float = 3600.0
    idempotency_max_entries: int = 10_000
    tombstone_grace_seconds: float = 3600.0
    create_race_attempts: int = 3
    create_race_backoff_seconds: float = 0.1


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"invalid {name}: {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"invalid {name}: {raw!r}") from exc


def load_webhook_config() -> WebhookConfig:
    """Clerk(Svix) webhook 검증 설정을 로드한다.

    시크릿이 없으면 어떤 webhook 도 검증할 수 없으므로 RuntimeError 를 발생시킨다.
    """

    secret = os.getenv(CLERK_WEBHOOK_SECRET, "").strip()
    if not secret:
        raise RuntimeError(
            f"{CLERK_WEBHOOK_SECRET} environment variable is required for webhooks",
        )
    return WebhookConfig(
        secret=secret,
        tolerance_seconds=_int_env(CLERK_WEBHOOK_TOLERANCE_SECONDS, 300),
    )


def load_gateway_config() -> GatewayConfig:
    key_id = os.getenv(RAZORPAY_KEY_ID, "").strip()
    key_secret = os.getenv(RAZORPAY_KEY_SECRET, "").strip()
    if not key_id or not key_secret:
        raise RuntimeError(
            f"{RAZORPAY_KEY_ID} and {RAZORPAY_KEY_SECRET} environment variables are required for payments",
        )
    return GatewayConfig(
        key_id=key_id,
        key_secret=key_secret,
        currency=os.getenv(CURRENCY, "INR"),
        base_url=os.getenv(RAZORPAY_BASE_URL, "https://api.razorpay.com/v1"),
        timeout_seconds=_float_env(RAZORPAY_TIMEOUT_SECONDS, 10.0),
    )


def load_ledger_config() -> LedgerConfig:
    balance = _int_env(DEFAULT_CREDIT_BALANCE, 5)
    if balance < 0:
        raise RuntimeError(f"{DEFAULT_CREDIT_BALANCE} must be non-negative: {balance}")
    return LedgerConfig(
        default_credit_balance=balance,
        currency=os.getenv(CURRENCY, "INR"),
    )


def load_reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(
        idempotency_retention_seconds=_float_env(IDEMPOTENCY_RETENTION_SECONDS, 3600.0),
        idempotency_max_entries=_int_env(IDEMPOTENCY_MAX_ENTRIES, 10_000),
        tombstone_grace_seconds=_float_env(USER_TOMBSTONE_GRACE_SECONDS, 3600.0),
    )


def get_clerk_jwt_key() -> str | None:
    """세션 토큰 검증용 PEM 공개키. 없으면 None (개발 모드: 서명 검증 생략)."""

    value = os.getenv(CLERK_JWT_KEY, "").strip()
    return value.replace("\\n", "\n") or None


def allow_unverified_tokens() -> bool:
    """CLERK_JWT_KEY 없이 서명 미검증 토큰을 받을지 여부. 로컬 개발에서만 켠다."""

    return os.getenv(CLERK_ALLOW_UNVERIFIED_TOKENS, "").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }
