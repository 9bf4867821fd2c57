from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pymongo import ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from common.mongo.client import USER_TOMBSTONES_COLLECTION, USERS_COLLECTION
from common.mongo.config import DEFAULT_TIMEOUT_SECONDS
from common.mongo.errors import store_call

from ..exceptions import DuplicateRecordError
from ..models.user import PROCESSED, PatchOutcome, User, UserPatch, event_key
from .documents.user_document import UserDocument
from .interfaces import UserRepositoryInterface, UserTombstoneRepositoryInterface


def _duplicate_field(exc: DuplicateKeyError) -> str:
    """DuplicateKeyError 가 어느 유니크 인덱스에서 났는지 판별한다."""

    details = exc.details or {}
    key_pattern = details.get("keyPattern") or details.get("keyValue") or {}
    if key_pattern:
        return next(iter(key_pattern))
    message = str(exc)
    if "uniq_email" in message:
        return "email"
    return "clerk_id"


class UserRepository(UserRepositoryInterface):
    """users 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(
        self, database: Database, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    ) -> None:
        self._db = database
        self._col = database[USERS_COLLECTION]
        self._timeout = timeout_seconds

    @staticmethod
    def _from_document(doc: dict) -> User:
        return UserDocument.model_validate(doc).to_domain()

    def find_by_clerk_id(
        self, clerk_id: str, session: ClientSession | None = None
    ) -> User | None:
        with store_call(self._timeout, "users.find_one"):
            doc = self._col.find_one({"clerk_id": clerk_id}, session=session)
        if not doc:
            return None
        return self._from_document(doc)

    def exists(self, clerk_id: str, session: ClientSession | None = None) -> bool:
        with store_call(self._timeout, "users.exists"):
            doc = self._col.find_one(
                {"clerk_id": clerk_id}, projection={"_id": 1}, session=session
            )
        return doc is not None

    def insert(self, user: User, session: ClientSession | None = None) -> User:
        payload = UserDocument.from_domain(user).to_mongo_record()
        try:
            with store_call(self._timeout, "users.insert_one"):
                result = self._col.insert_one(payload, session=session)
        except DuplicateKeyError as exc:
            field = _duplicate_field(exc)
            raise DuplicateRecordError(
                field, f"user already exists ({field} conflict, clerk_id={user.clerk_id})"
            ) from exc
        payload["_id"] = result.inserted_id
        return self._from_document(payload)

    def apply_patch(
        self,
        clerk_id: str,
        patch: UserPatch,
        event_id: str,
        session: ClientSession | None = None,
    ) -> PatchOutcome:
        """이벤트 하나의 부분 갱신을 조건부로 적용한다.

        - processed_events 에 event_id 가 이미 있으면 매칭되지 않으므로 같은 이벤트가
          두 번 적용되지 않는다.
        - 값이 있는 필드만 $set 한다.
        """

        processed_key = f"processed_events.{event_key(event_id)}"
        now = datetime.now(timezone.utc)
        fields = patch.to_set_fields()
        fields[processed_key] = PROCESSED
        fields["updated_at"] = now

        try:
            with store_call(self._timeout, "users.update_one"):
                result = self._col.update_one(
                    {"clerk_id": clerk_id, processed_key: {"$exists": False}},
                    {"$set": fields},
                    session=session,
                )
        except DuplicateKeyError as exc:
            field = _duplicate_field(exc)
            raise DuplicateRecordError(
                field, f"user update conflicts on {field} (clerk_id={clerk_id})"
            ) from exc

        if result.matched_count == 1:
            return PatchOutcome.UPDATED
        if self.exists(clerk_id, session=session):
            return PatchOutcome.ALREADY_PROCESSED
        return PatchOutcome.NOT_FOUND

    def delete_by_clerk_id(
        self, clerk_id: str, session: ClientSession | None = None
    ) -> bool:
        """clerk_id 기준으로 유저 도큐먼트를 삭제한다.

        - 삭제된 도큐먼트가 있으면 True, 없으면 False 를 반환한다.
        - 결제 트랜잭션 기록은 정산 이력이므로 함께 지우지 않는다.
        """

        with store_call(self._timeout, "users.delete_one"):
            result = self._col.delete_one({"clerk_id": clerk_id}, session=session)
        return result.deleted_count > 0

    def increment_balance(
        self, clerk_id: str, amount: int, session: ClientSession | None = None
    ) -> User | None:
        if amount < 0:
            raise ValueError(f"increment amount must be non-negative: {amount}")

        with store_call(self._timeout, "users.increment_balance"):
            doc = self._col.find_one_and_update(
                {"clerk_id": clerk_id},
                {
                    "$inc": {"credit_balance": amount},
                    "$set": {"updated_at": datetime.now(timezone.utc)},
                },
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        if not doc:
            return None
        return self._from_document(doc)

    def deduct_balance(
        self, clerk_id: str, amount: int, session: ClientSession | None = None
    ) -> User | None:
        if amount < 0:
            raise ValueError(f"deduct amount must be non-negative: {amount}")

        # credit_balance >= amount 조건과 $inc 가 한 연산이므로 음수가 될 수 없다.
        with store_call(self._timeout, "users.deduct_balance"):
            doc = self._col.find_one_and_update(
                {"clerk_id": clerk_id, "credit_balance": {"$gte": amount}},
                {
                    "$inc": {"credit_balance": -amount},
                    "$set": {"updated_at": datetime.now(timezone.utc)},
                },
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        if not doc:
            return None
        return self._from_document(doc)


class UserTombstoneRepository(UserTombstoneRepositoryInterface):
    """user_tombstones 컬렉션. expire_at TTL 인덱스로 유예 기간이 지나면 자동 삭제된다."""

    def __init__(
        self, database: Database, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    ) -> None:
        self._col = database[USER_TOMBSTONES_COLLECTION]
        self._timeout = timeout_seconds

    def put(
        self, clerk_id: str, grace_seconds: float, session: ClientSession | None = None
    ) -> None:
        now = datetime.now(timezone.utc)
        with store_call(self._timeout, "user_tombstones.upsert"):
            self._col.update_one(
                {"clerk_id": clerk_id},
                {
                    "$set": {
                        "deleted_at": now,
                        "expire_at": now + timedelta(seconds=grace_seconds),
                    },
                    "$setOnInsert": {"clerk_id": clerk_id},
                },
                upsert=True,
                session=session,
            )

    def is_alive(self, clerk_id: str, session: ClientSession | None = None) -> bool:
        # TTL 모니터는 60초 주기로 돌기 때문에 expire_at 을 직접 비교한다.
        now = datetime.now(timezone.utc)
        with store_call(self._timeout, "user_tombstones.find_one"):
            doc = self._col.find_one(
                {"clerk_id": clerk_id, "expire_at": {"$gt": now}},
                projection={"_id": 1},
                session=session,
            )
        return doc is not None
