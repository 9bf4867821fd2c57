from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Optional, TypeVar, cast

from pymongo import ASCENDING, DESCENDING, IndexModel, MongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

from .config import DEFAULT_TRANSACTION_ATTEMPTS, MongoConfig, load_mongo_config
from .errors import StoreUnavailableError, TransactionConflictError, store_call


logger = logging.getLogger(__name__)


USERS_COLLECTION = "users"
TRANSACTIONS_COLLECTION = "transactions"
USER_TOMBSTONES_COLLECTION = "user_tombstones"

CONNECT_BACKOFF_SECONDS = 1.0
TRANSACTION_BACKOFF_SECONDS = 0.05

TRANSIENT_TRANSACTION_LABEL = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT_LABEL = "UnknownTransactionCommitResult"

T = TypeVar("T")

_client: Optional[MongoClient] = None
_db: Optional[Database] = None
_config: Optional[MongoConfig] = None
_lock = threading.Lock()


def _connect(config: MongoConfig) -> MongoClient:
    """ping 이 성공할 때까지 제한된 횟수만큼 연결을 시도한다.

    재시도 간격은 시도 횟수에 비례해서 늘어난다 (1s, 2s, ...).
    """

    last_error: Exception | None = None
    for attempt in range(1, config.connect_attempts + 1):
        client: MongoClient = MongoClient(
            config.uri,
            maxPoolSize=10,
            minPoolSize=2,
            maxIdleTimeMS=30000,
            serverSelectionTimeoutMS=int(config.timeout_seconds * 1000),
            socketTimeoutMS=45000,
            w="majority",
            journal=True,
            tz_aware=True,
        )
        try:
            client.admin.command("ping")
            return client
        except ConnectionFailure as exc:
            client.close()
            last_error = exc
            logger.warning(
                "MongoDB ping failed (attempt %d/%d): %s",
                attempt,
                config.connect_attempts,
                exc,
            )
            if attempt < config.connect_attempts:
                time.sleep(CONNECT_BACKOFF_SECONDS * attempt)

    raise StoreUnavailableError(
        f"failed to connect to MongoDB after {config.connect_attempts} attempts: {last_error}"
    ) from last_error


def get_client() -> MongoClient:
    """전역 MongoClient 싱글톤을 반환한다.

    - MONGO_URI / MONGO_DB_NAME 에서 설정을 읽어온다.
    - ping 으로 연결을 검증하고, 실패하면 백오프를 두고 재시도한다.
    - 필요한 인덱스를 한 번만 생성한다.
    """

    global _client, _db, _config

    if _client is not None:
        return _client

    with _lock:
        if _client is not None:
            return _client

        config = load_mongo_config()
        client = _connect(config)
        db = client[config.db_name]

        try:
            with store_call(config.timeout_seconds, "ensure indexes"):
                _ensure_indexes(db)
        except Exception as exc:  # noqa: BLE001
            # 유니크 인덱스 없이는 중복 유저 방지가 보장되지 않으므로 치명적 오류로 본다.
            logger.error("failed to ensure MongoDB indexes: %s", exc)
            client.close()
            raise

        _client = client
        _db = db
        _config = config

        safe_db = cast(Database, _db)
        logger.info("MongoDB connected and indexes ensured (db=%s)", safe_db.name)
        return _client


def get_database() -> Database:
    """전역 기본 Database 객체를 반환한다."""

    if _db is None:
        get_client()
    assert _db is not None
    return _db


def get_mongo_config() -> MongoConfig:
    if _config is None:
        get_client()
    assert _config is not None
    return _config


def close_client() -> None:
    global _client, _db, _config

    with _lock:
        if _client is not None:
            _client.close()
            logger.info("MongoDB client closed")
        _client = None
        _db = None
        _config = None


def _ensure_indexes(db: Database) -> None:
    """필수 인덱스를 생성한다. 중복 생성해도 MongoDB 가 처리하므로 idempotent 하다."""

    users = db[USERS_COLLECTION]
    users.create_indexes(
        [
            IndexModel([("clerk_id", ASCENDING)], name="uniq_clerk_id", unique=True),
            # email 은 선택 필드이므로 문자열일 때만 유니크를 강제한다.
            IndexModel(
                [("email", ASCENDING)],
                name="uniq_email",
                unique=True,
                partialFilterExpression={"email": {"$type": "string"}},
            ),
        ]
    )

    transactions = db[TRANSACTIONS_COLLECTION]
    transactions.create_indexes(
        [
            IndexModel(
                [("clerk_id", ASCENDING), ("date", DESCENDING)],
                name="idx_clerk_id_date",
            ),
            IndexModel(
                [("order_id", ASCENDING)],
                name="uniq_order_id",
                unique=True,
                partialFilterExpression={"order_id": {"$type": "string"}},
            ),
        ]
    )

    tombstones = db[USER_TOMBSTONES_COLLECTION]
    tombstones.create_indexes(
        [
            IndexModel([("clerk_id", ASCENDING)], name="uniq_clerk_id", unique=True),
            IndexModel(
                [("expire_at", ASCENDING)],
                name="ttl_expire_at",
                expireAfterSeconds=0,
            ),
        ]
    )


class MongoTransactions:
    """여러 도큐먼트 변경을 하나의 트랜잭션으로 묶는다.

    - callback 이 정상 반환하면 커밋, 예외가 전파되면 abort 된다.
    - TransientTransactionError(write conflict 등)면 트랜잭션 전체를 처음부터 다시 실행한다.
    - 커밋 결과를 알 수 없으면(UnknownTransactionCommitResult) 커밋만 다시 시도한다.
    - enabled=False 이면 세션 없이 None 을 넘긴다. 호출자는 session=None 으로
      동일한 조건부 연산을 수행한다.

    callback 은 재실행될 수 있으므로 세션 밖의 부수효과를 가지면 안 된다.
    """

    def __init__(
        self,
        client: MongoClient | None,
        *,
        enabled: bool,
        timeout_seconds: float,
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
        backoff_seconds: float = TRANSACTION_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._enabled = enabled and client is not None
        self._timeout = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._sleep = sleep

    def run(self, operation: str, callback: Callable[[ClientSession | None], T]) -> T:
        """callback 을 하나의 트랜잭션으로 실행하고 그 반환값을 돌려준다.

        Raises:
            TransactionConflictError: max_attempts 번 모두 충돌로 abort 된 경우
        """

        if not self._enabled:
            return callback(None)

        assert self._client is not None
        attempt = 0
        while True:
            attempt += 1
            try:
                with store_call(self._timeout, operation):
                    with self._client.start_session() as session:
                        return self._run_once(session, operation, callback)
            except TransactionConflictError:
                if attempt >= self._max_attempts:
                    logger.warning(
                        "transaction conflict not resolved operation=%s attempts=%d",
                        operation,
                        attempt,
                    )
                    raise
                logger.info(
                    "transaction conflict, retrying operation=%s attempt=%d/%d",
                    operation,
                    attempt,
                    self._max_attempts,
                )
                self._sleep(self._backoff * attempt)

    def _run_once(
        self,
        session: ClientSession,
        operation: str,
        callback: Callable[[ClientSession | None], T],
    ) -> T:
        session.start_transaction()
        try:
            result = callback(session)
        except Exception as exc:
            if session.in_transaction:
                session.abort_transaction()
            if _is_transient(exc):
                raise TransactionConflictError(f"{operation}: {exc}") from exc
            raise

        self._commit(session, operation)
        return result

    def _commit(self, session: ClientSession, operation: str) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                session.commit_transaction()
                return
            except PyMongoError as exc:
                if (
                    exc.has_error_label(UNKNOWN_COMMIT_RESULT_LABEL)
                    and attempt < self._max_attempts
                ):
                    logger.warning(
                        "commit result unknown, retrying commit operation=%s attempt=%d",
                        operation,
                        attempt,
                    )
                    continue
                if _is_transient(exc):
                    raise TransactionConflictError(f"{operation}: {exc}") from exc
                raise


def _is_transient(exc: BaseException) -> bool:
    # 네트워크 오류는 repository 의 store_call 에서 StoreUnavailableError 로 바뀌어 올라온다.
    return (
        isinstance(exc, PyMongoError)
        and not isinstance(exc, ConnectionFailure)
        and exc.has_error_label(TRANSIENT_TRANSACTION_LABEL)
    )


def get_transactions() -> MongoTransactions:
    config = get_mongo_config()
    return MongoTransactions(
        get_client(),
        enabled=config.transactions_enabled,
        timeout_seconds=config.timeout_seconds,
        max_attempts=config.transaction_attempts,
    )
