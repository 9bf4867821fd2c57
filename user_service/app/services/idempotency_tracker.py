"""프로세스 로컬 webhook 멱등성 캐시.

같은 프로세스가 살아있는 동안 중복 전달된 이벤트를 빨리 걸러내기 위한 최적화일 뿐이다.
재시작이나 다중 인스턴스 환경에서의 정확성은 users 컬렉션의 유니크 인덱스와
processed_events 조건부 갱신이 보장한다.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from ..config import load_reconciler_config


logger = logging.getLogger(__name__)


DEFAULT_RETENTION_SECONDS = 3600.0
DEFAULT_MAX_ENTRIES = 10_000


class EventStatus(StrEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TrackedEvent:
    status: EventStatus
    timestamp: float  # 최초 등록 시각 (보존 기간 계산 기준)
    error: str | None = None


class IdempotencyTracker:
    """event-id -> 처리 상태 맵.

    - 모든 변경은 lock 안에서 수행한다.
    - 보존 기간(기본 1시간)이 지난 항목은 매 연산마다 lazy 하게 제거한다.
    - max_entries 를 넘으면 가장 오래된 항목부터 버린다.
    - FAILED 항목은 "알려진" 이벤트로 보지 않는다. 업스트림 재전달 시 다시 처리된다.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, TrackedEvent] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, event_id: str) -> TrackedEvent | None:
        with self._lock:
            self._evict_locked(self._clock())
            entry = self._entries.get(event_id)
            if entry is None:
                return None
            return TrackedEvent(entry.status, entry.timestamp, entry.error)

    def is_known(self, event_id: str) -> bool:
        with self._lock:
            self._evict_locked(self._clock())
            return self._is_known_locked(event_id)

    def begin(self, event_id: str) -> bool:
        """처음 보는 이벤트면 PROCESSING 으로 등록하고 True, 이미 진행/완료된 이벤트면 False.

        is_known + mark_processing 을 하나의 임계 구역에서 수행한다.
        """

        with self._lock:
            now = self._clock()
            self._evict_locked(now)
            if self._is_known_locked(event_id):
                return False
            self._put_locked(event_id, TrackedEvent(EventStatus.PROCESSING, now))
            return True

    def mark_processing(self, event_id: str) -> None:
        with self._lock:
            now = self._clock()
            self._evict_locked(now)
            entry = self._entries.get(event_id)
            if entry is not None and entry.status == EventStatus.COMPLETED:
                return
            self._put_locked(event_id, TrackedEvent(EventStatus.PROCESSING, now))

    def mark_completed(self, event_id: str) -> None:
        with self._lock:
            now = self._clock()
            self._evict_locked(now)
            entry = self._entries.get(event_id)
            if entry is None:
                self._put_locked(event_id, TrackedEvent(EventStatus.COMPLETED, now))
                return
            entry.status = EventStatus.COMPLETED
            entry.error = None

    def mark_failed(self, event_id: str, reason: str) -> None:
        with self._lock:
            now = self._clock()
            self._evict_locked(now)
            entry = self._entries.get(event_id)
            if entry is None:
                self._put_locked(
                    event_id, TrackedEvent(EventStatus.FAILED, now, error=reason)
                )
                return
            if entry.status == EventStatus.COMPLETED:
                # 완료 상태를 더 약한 상태로 되돌리지 않는다.
                logger.warning(
                    "ignoring failure for completed event id=%s reason=%s",
                    event_id,
                    reason,
                )
                return
            entry.status = EventStatus.FAILED
            entry.error = reason

    def evict_expired(self, now: float | None = None) -> int:
        """보존 기간이 지난 항목을 제거하고 제거한 개수를 반환한다."""

        with self._lock:
            return self._evict_locked(self._clock() if now is None else now)

    def _is_known_locked(self, event_id: str) -> bool:
        entry = self._entries.get(event_id)
        return entry is not None and entry.status != EventStatus.FAILED

    def _put_locked(self, event_id: str, entry: TrackedEvent) -> None:
        self._entries.pop(event_id, None)
        self._entries[event_id] = entry
        while len(self._entries) > self._max_entries:
            dropped, _ = self._entries.popitem(last=False)
            logger.debug("idempotency cache full, dropped event id=%s", dropped)

    def _evict_locked(self, now: float) -> int:
        # 등록 순서 = timestamp 순서이므로 앞에서부터 만료된 항목만 걷어낸다.
        cutoff = now - self._retention
        evicted = 0
        while self._entries:
            event_id, entry = next(iter(self._entries.items()))
            if entry.timestamp > cutoff:
                break
            del self._entries[event_id]
            evicted += 1
        return evicted


_tracker: IdempotencyTracker | None = None
_tracker_lock = threading.Lock()


def get_idempotency_tracker() -> IdempotencyTracker:
    """프로세스 전역 IdempotencyTracker 싱글톤을 반환한다."""

    global _tracker

    if _tracker is not None:
        return _tracker

    with _tracker_lock:
        if _tracker is None:
            config = load_reconciler_config()
            _tracker = IdempotencyTracker(
                retention_seconds=config.idempotency_retention_seconds,
                max_entries=config.idempotency_max_entries,
            )
        return _tracker
