"""결제 트랜잭션 레포지토리 구현체."""

from __future__ import annotations

from datetime import datetime, timezone

from pymongo import ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database

from common.mongo.client import TRANSACTIONS_COLLECTION
from common.mongo.config import DEFAULT_TIMEOUT_SECONDS
from common.mongo.errors import store_call
from common.mongo.types import parse_object_id

from ..models.transaction import Transaction
from .documents.transaction_document import TransactionDocument
from .interfaces import TransactionRepositoryInterface


class TransactionRepository(TransactionRepositoryInterface):
    """transactions 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(
        self, database: Database, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    ) -> None:
        self._db = database
        self._col = database[TRANSACTIONS_COLLECTION]
        self._timeout = timeout_seconds

    def create(self, tx: Transaction, session: ClientSession | None = None) -> Transaction:
        payload = TransactionDocument.from_domain(tx).to_mongo_record()
        with store_call(self._timeout, "transactions.insert_one"):
            result = self._col.insert_one(payload, session=session)
        payload["_id"] = result.inserted_id
        return TransactionDocument.model_validate(payload).to_domain()

    def find_by_id(
        self, transaction_id: str, session: ClientSession | None = None
    ) -> Transaction | None:
        oid = parse_object_id(transaction_id)
        if oid is None:
            return None
        with store_call(self._timeout, "transactions.find_one"):
            doc = self._col.find_one({"_id": oid}, session=session)
        if not doc:
            return None
        return TransactionDocument.model_validate(doc).to_domain()

    def set_order_id(self, transaction_id: str, order_id: str) -> None:
        oid = parse_object_id(transaction_id)
        if oid is None:
            raise ValueError(f"invalid transaction id: {transaction_id!r}")
        with store_call(self._timeout, "transactions.set_order_id"):
            self._col.update_one(
                {"_id": oid},
                {"$set": {"order_id": order_id, "updated_at": datetime.now(timezone.utc)}},
            )

    def mark_payment_applied(
        self, transaction_id: str, session: ClientSession | None = None
    ) -> Transaction | None:
        """payment 플래그 compare-and-set (false -> true).

        동시에 두 요청이 들어와도 하나만 매칭되므로 결제가 두 번 반영되지 않는다.
        """

        oid = parse_object_id(transaction_id)
        if oid is None:
            return None
        with store_call(self._timeout, "transactions.mark_payment_applied"):
            doc = self._col.find_one_and_update(
                {"_id": oid, "payment": False},
                {"$set": {"payment": True, "updated_at": datetime.now(timezone.utc)}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        if not doc:
            return None
        return TransactionDocument.model_validate(doc).to_domain()
