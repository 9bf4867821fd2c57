"""Clerk webhook 이벤트를 users 컬렉션 변경으로 반영한다.

- user.created: clerk_id 기준 멱등. 이미 있으면 no-op, 동시 생성 경합은 유니크 인덱스로 판정한다.
- user.updated: 값이 있는 필드만 조건부 갱신. 레코드가 없으면 로그만 남기고 버린다.
- user.deleted: 조건부 삭제 + 툼스톤 기록. 레코드가 없어도 툼스톤은 남긴다.
- 그 외 타입: 수신만 확인하고 아무것도 바꾸지 않는다.

이 컴포넌트는 실패한 이벤트를 재시도하지 않는다. 재전달은 업스트림(Svix)의 책임이다.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import StrEnum

from fastapi import Depends
from pymongo.client_session import ClientSession

from common.mongo.client import get_transactions
from common.mongo.errors import TransactionConflictError

from ..config import ReconcilerConfig, load_reconciler_config
from ..exceptions import DuplicateRecordError, RaceRetryExhaustedError, ValidationError
from ..models.user import PROCESSED, PatchOutcome, User, event_key
from ..models.webhook import ClerkUserData, WebhookEvent, WebhookEventType
from ..repositories.interfaces import (
    TransactionRunnerInterface,
    UserRepositoryInterface,
    UserTombstoneRepositoryInterface,
)
from .balance_ledger import BalanceLedger, get_balance_ledger
from .dependencies import get_user_repository, get_user_tombstone_repository
from .idempotency_tracker import IdempotencyTracker, get_idempotency_tracker


logger = logging.getLogger(__name__)


class ReconcileResult(StrEnum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    TOMBSTONED = "tombstoned"
    UPDATED = "updated"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"
    DELETED = "deleted"
    IGNORED = "ignored"


class WebhookReconciler:
    def __init__(
        self,
        user_repo: UserRepositoryInterface,
        tombstone_repo: UserTombstoneRepositoryInterface,
        transactions: TransactionRunnerInterface,
        ledger: BalanceLedger,
        tracker: IdempotencyTracker,
        *,
        config: ReconcilerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._user_repo = user_repo
        self._tombstone_repo = tombstone_repo
        self._transactions = transactions
        self._ledger = ledger
        self._tracker = tracker
        self._config = config or ReconcilerConfig()
        self._sleep = sleep

    def process(self, event: WebhookEvent) -> ReconcileResult | None:
        """응답 이후 백그라운드에서 실행되는 진입점.

        실패는 호출자에게 돌아갈 곳이 없으므로 로그와 멱등성 캐시에만 남긴다.
        """

        extra = {
            "event_id": event.event_id,
            "event_type": event.type,
            "clerk_id": event.clerk_id,
        }
        start = time.monotonic()
        try:
            result = self.reconcile(event)
        except Exception as exc:  # noqa: BLE001
            self._tracker.mark_failed(event.event_id, str(exc))
            logger.exception(
                "webhook processing failed type=%s id=%s",
                event.type,
                event.event_id,
                extra=extra,
            )
            return None

        self._tracker.mark_completed(event.event_id)
        logger.info(
            "webhook processed type=%s id=%s result=%s duration=%.1fms",
            event.type,
            event.event_id,
            result,
            (time.monotonic() - start) * 1000,
            extra=extra,
        )
        return result

    def reconcile(self, event: WebhookEvent) -> ReconcileResult:
        if event.type == WebhookEventType.USER_CREATED:
            return self._handle_created(event.event_id, self._require_user(event))
        if event.type == WebhookEventType.USER_UPDATED:
            return self._handle_updated(event.event_id, self._require_user(event))
        if event.type == WebhookEventType.USER_DELETED:
            return self._handle_deleted(self._require_user(event))

        logger.info(
            "unhandled webhook event type=%s id=%s",
            event.type,
            event.event_id,
            extra={"event_id": event.event_id, "event_type": event.type},
        )
        return ReconcileResult.IGNORED

    @staticmethod
    def _require_user(event: WebhookEvent) -> ClerkUserData:
        if event.user is None:
            raise ValidationError(f"{event.type} event without user payload")
        return event.user

    def _handle_created(self, event_id: str, data: ClerkUserData) -> ReconcileResult:
        clerk_id = data.id
        if self._user_repo.exists(clerk_id):
            logger.info("user already exists clerk_id=%s", clerk_id)
            return ReconcileResult.ALREADY_EXISTS

        now = datetime.now(timezone.utc)
        user = self._ledger.grant_initial_credits(
            User(
                clerk_id=clerk_id,
                email=data.primary_email(),
                photo=data.image_url or None,
                first_name=data.first_name or None,
                last_name=data.last_name or None,
                processed_events={event_key(event_id): PROCESSED},
                created_at=now,
                updated_at=now,
            )
        )

        def _insert(session: ClientSession | None) -> ReconcileResult:
            if self._tombstone_repo.is_alive(clerk_id, session=session):
                return ReconcileResult.TOMBSTONED
            self._user_repo.insert(user, session=session)
            return ReconcileResult.CREATED

        try:
            result = self._transactions.run("user.created", _insert)
        except DuplicateRecordError as exc:
            logger.info(
                "user.created lost insert race clerk_id=%s field=%s", clerk_id, exc.field
            )
            return self._await_concurrent_create(clerk_id, conflict_field=exc.field)
        except TransactionConflictError:
            logger.info("user.created transaction conflict clerk_id=%s", clerk_id)
            return self._await_concurrent_create(clerk_id, conflict_field="clerk_id")

        if result == ReconcileResult.TOMBSTONED:
            logger.warning(
                "dropping user.created for recently deleted clerk_id=%s", clerk_id
            )
            return result

        logger.info(
            "user created clerk_id=%s credit_balance=%d", clerk_id, user.credit_balance
        )
        return ReconcileResult.CREATED

    def _await_concurrent_create(
        self, clerk_id: str, *, conflict_field: str
    ) -> ReconcileResult:
        """유니크 제약 위반 후, 경합에서 이긴 쪽의 레코드가 보일 때까지 재확인한다."""

        attempts = self._config.create_race_attempts
        for attempt in range(1, attempts + 1):
            self._sleep(self._config.create_race_backoff_seconds * attempt)
            if self._user_repo.exists(clerk_id):
                return ReconcileResult.ALREADY_EXISTS
            logger.debug(
                "concurrent user not visible yet clerk_id=%s attempt=%d/%d",
                clerk_id,
                attempt,
                attempts,
            )

        if conflict_field == "email":
            # 같은 이메일을 다른 identity 가 이미 쓰고 있다.
            raise ValidationError(
                f"email already belongs to another user (clerk_id={clerk_id})"
            )
        raise RaceRetryExhaustedError(
            f"user.created race not resolved after {attempts} attempts (clerk_id={clerk_id})"
        )

    def _handle_updated(self, event_id: str, data: ClerkUserData) -> ReconcileResult:
        clerk_id = data.id
        patch = data.to_patch()

        try:
            outcome = self._transactions.run(
                "user.updated",
                lambda session: self._user_repo.apply_patch(
                    clerk_id, patch, event_id, session=session
                ),
            )
        except DuplicateRecordError as exc:
            raise ValidationError(
                f"user.updated conflicts on {exc.field} (clerk_id={clerk_id})"
            ) from exc

        if outcome == PatchOutcome.NOT_FOUND:
            # 삭제되었거나 아직 생성되지 않은 유저. 재시도하지 않는다.
            logger.info("user not found for update, dropping clerk_id=%s", clerk_id)
            return ReconcileResult.NOT_FOUND
        if outcome == PatchOutcome.ALREADY_PROCESSED:
            logger.info(
                "user.updated already applied clerk_id=%s id=%s", clerk_id, event_id
            )
            return ReconcileResult.ALREADY_PROCESSED

        logger.info(
            "user updated clerk_id=%s fields=%s",
            clerk_id,
            sorted(patch.to_set_fields()),
        )
        return ReconcileResult.UPDATED

    def _handle_deleted(self, data: ClerkUserData) -> ReconcileResult:
        clerk_id = data.id

        def _delete(session: ClientSession | None) -> bool:
            deleted = self._user_repo.delete_by_clerk_id(clerk_id, session=session)
            self._tombstone_repo.put(
                clerk_id, self._config.tombstone_grace_seconds, session=session
            )
            return deleted

        deleted = self._transactions.run("user.deleted", _delete)

        if not deleted:
            logger.info("user not found for deletion clerk_id=%s", clerk_id)
            return ReconcileResult.NOT_FOUND

        logger.info("user deleted clerk_id=%s", clerk_id)
        return ReconcileResult.DELETED


def get_webhook_reconciler(
    user_repo: UserRepositoryInterface = Depends(get_user_repository),
    tombstone_repo: UserTombstoneRepositoryInterface = Depends(
        get_user_tombstone_repository
    ),
    transactions: TransactionRunnerInterface = Depends(get_transactions),
    ledger: BalanceLedger = Depends(get_balance_ledger),
    tracker: IdempotencyTracker = Depends(get_idempotency_tracker),
) -> WebhookReconciler:
    """FastAPI DI용 WebhookReconciler 팩토리."""

    return WebhookReconciler(
        user_repo=user_repo,
        tombstone_repo=tombstone_repo,
        transactions=transactions,
        ledger=ledger,
        tracker=tracker,
        config=load_reconciler_config(),
    )
