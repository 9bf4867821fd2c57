from __future__ import annotations

import os
from dataclasses import dataclass


MONGO_URI_ENV = "MONGO_URI"
MONGO_DB_NAME_ENV = "MONGO_DB_NAME"
MONGO_TIMEOUT_SECONDS_ENV = "MONGO_TIMEOUT_SECONDS"
MONGO_TRANSACTIONS_ENABLED_ENV = "MONGO_TRANSACTIONS_ENABLED"
MONGO_CONNECT_ATTEMPTS_ENV = "MONGO_CONNECT_ATTEMPTS"
MONGO_TRANSACTION_ATTEMPTS_ENV = "MONGO_TRANSACTION_ATTEMPTS"

DEFAULT_DB_NAME = "bg-removal"
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_CONNECT_ATTEMPTS = 3
DEFAULT_TRANSACTION_ATTEMPTS = 5


@dataclass(slots=True)
class MongoConfig:
    """MongoDB 연결 설정.

    - timeout_seconds 는 모든 스토어 호출의 데드라인(pymongo.timeout)으로 사용된다.
    - transactions_enabled 가 False 이면 세션 없이 동일한 조건부 연산만 수행한다
      (standalone mongod 개발 환경용).
    - transaction_attempts 는 write conflict 등 일시적 트랜잭션 오류의 최대 시도 횟수다.
    """

    uri: str
    db_name: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    transactions_enabled: bool = True
    connect_attempts: int = DEFAULT_CONNECT_ATTEMPTS
    transaction_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS


def get_mongo_uri() -> str:
    """MongoDB 연결에 사용할 URI를 반환한다.

    환경 변수에서만 읽고, 설정되지 않은 경우에는 애플리케이션이 즉시 실패하도록
    RuntimeError를 발생시킨다.
    """

    value = os.getenv(MONGO_URI_ENV)
    if not value:
        raise RuntimeError(
            f"{MONGO_URI_ENV} environment variable is required for MongoDB",
        )
    return value


def get_mongo_db_name() -> str:
    value = os.getenv(MONGO_DB_NAME_ENV, "").strip()
    return value or DEFAULT_DB_NAME


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_mongo_config() -> MongoConfig:
    timeout_raw = os.getenv(MONGO_TIMEOUT_SECONDS_ENV)
    attempts_raw = os.getenv(MONGO_CONNECT_ATTEMPTS_ENV)
    tx_attempts_raw = os.getenv(MONGO_TRANSACTION_ATTEMPTS_ENV)
    try:
        timeout = (
            float(timeout_raw) if timeout_raw is not None else DEFAULT_TIMEOUT_SECONDS
        )
        attempts = (
            int(attempts_raw) if attempts_raw is not None else DEFAULT_CONNECT_ATTEMPTS
        )
        tx_attempts = (
            int(tx_attempts_raw)
            if tx_attempts_raw is not None
            else DEFAULT_TRANSACTION_ATTEMPTS
        )
    except ValueError as exc:
        raise RuntimeError(
            f"invalid MongoDB settings: timeout={timeout_raw!r} attempts={attempts_raw!r} "
            f"transaction_attempts={tx_attempts_raw!r}",
        ) from exc

    return MongoConfig(
        uri=get_mongo_uri(),
        db_name=get_mongo_db_name(),
        timeout_seconds=timeout,
        transactions_enabled=_parse_bool(
            os.getenv(MONGO_TRANSACTIONS_ENABLED_ENV), True
        ),
        connect_attempts=max(1, attempts),
        transaction_attempts=max(1, tx_attempts),
    )
