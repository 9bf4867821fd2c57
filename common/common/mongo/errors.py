from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import pymongo
from pymongo.errors import ConnectionFailure, PyMongoError


class StoreUnavailableError(RuntimeError):
    """MongoDB 연결 실패 또는 데드라인 초과."""


@contextmanager
def store_call(timeout_seconds: float, operation: str) -> Iterator[None]:
    """스토어 호출 하나를 데드라인으로 감싼다.

    - pymongo.timeout 으로 블록 안의 모든 명령에 같은 데드라인을 적용한다.
    - 타임아웃/연결 오류는 StoreUnavailableError 로 변환하고, 그 외 오류
      (DuplicateKeyError 등)는 호출자가 판단하도록 그대로 전파한다.
    """

    with pymongo.timeout(timeout_seconds):
        try:
            yield
        except ConnectionFailure as exc:
            raise StoreUnavailableError(f"{operation}: {exc}") from exc
        except PyMongoError as exc:
            if exc.timeout:
                raise StoreUnavailableError(f"{operation} timed out: {exc}") from exc
            raise


class TransactionConflictError(RuntimeError):
    """트랜잭션이 다른 트랜잭션과 충돌해서 abort 되었다 (TransientTransactionError)."""
