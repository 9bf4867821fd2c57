"""Clerk webhook 서명 검증.

Clerk 는 Svix 를 통해 webhook 을 전달한다. 서명 방식:

- signed content = "{svix-id}.{svix-timestamp}.{raw body}"
- HMAC-SHA256(key=base64decode(secret without "whsec_"), signed content) -> base64
- svix-signature 헤더는 "v1,<sig> v1,<sig2>" 처럼 공백으로 구분된 목록이다.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from collections.abc import Callable, Mapping

from ..exceptions import MissingHeaderError, VerificationFailedError


EVENT_ID_HEADER = "svix-id"
EVENT_TIMESTAMP_HEADER = "svix-timestamp"
EVENT_SIGNATURE_HEADER = "svix-signature"
REQUIRED_HEADERS = (EVENT_ID_HEADER, EVENT_SIGNATURE_HEADER, EVENT_TIMESTAMP_HEADER)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def _decode_secret(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(SECRET_PREFIX) :], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise RuntimeError("webhook secret is not valid base64") from exc
    return secret.encode("utf-8")


def extract_required_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """필수 헤더 3개를 소문자 키로 꺼낸다. 하나라도 없으면 MissingHeaderError."""

    lowered = {key.lower(): value for key, value in headers.items()}
    missing = [name for name in REQUIRED_HEADERS if not lowered.get(name)]
    if missing:
        raise MissingHeaderError(missing)
    return {name: lowered[name] for name in REQUIRED_HEADERS}


class SignatureVerifier:
    """webhook 진위 검증기. 상태를 바꾸지 않는 순수 검증 경계다."""

    def __init__(
        self,
        secret: str,
        *,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise RuntimeError("webhook secret must not be empty")
        self._key = _decode_secret(secret)
        self._tolerance = tolerance_seconds
        self._clock = clock

    def sign(self, event_id: str, timestamp: int, body: bytes) -> str:
        """v1 서명 문자열을 만든다. (테스트/로컬 재현용으로도 사용)"""

        signed_content = f"{event_id}.{timestamp}.".encode("utf-8") + body
        digest = hmac.new(self._key, signed_content, hashlib.sha256).digest()
        return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode('ascii')}"

    def verify(self, body: bytes, headers: Mapping[str, str]) -> str:
        """서명을 검증하고 event-id 를 반환한다.

        Raises:
            MissingHeaderError: 필수 헤더 누락 (시크릿을 사용하기 전에 판정)
            VerificationFailedError: 타임스탬프 형식 오류/만료 또는 서명 불일치
        """

        required = extract_required_headers(headers)
        event_id = required[EVENT_ID_HEADER]

        try:
            timestamp = int(required[EVENT_TIMESTAMP_HEADER])
        except ValueError as exc:
            raise VerificationFailedError("Invalid timestamp header") from exc

        now = int(self._clock())
        if abs(now - timestamp) > self._tolerance:
            raise VerificationFailedError(
                f"Message timestamp outside tolerance (timestamp={timestamp} now={now})"
            )

        expected = self.sign(event_id, timestamp, body).split(",", 1)[1]
        for candidate in required[EVENT_SIGNATURE_HEADER].split():
            version, _, signature = candidate.partition(",")
            if version != SIGNATURE_VERSION or not signature:
                continue
            if hmac.compare_digest(signature.encode("ascii", "ignore"), expected.encode("ascii")):
                return event_id

        raise VerificationFailedError("No matching signature found")
