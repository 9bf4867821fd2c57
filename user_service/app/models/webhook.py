"""Clerk webhook 이벤트 모델."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from .user import UserPatch


class WebhookEventType(StrEnum):
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"


USER_EVENT_TYPES = frozenset(t.value for t in WebhookEventType)


class ClerkEmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    email_address: str | None = None


class ClerkUserData(BaseModel):
    """user.* 이벤트의 data 페이로드 중 이 서비스가 사용하는 필드만 정의한다."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    email_addresses: list[ClerkEmailAddress] = Field(default_factory=list)
    primary_email_address_id: str | None = None
    image_url: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    def primary_email(self) -> str | None:
        """대표 이메일을 고른다.

        primary_email_address_id 와 일치하는 항목 -> 첫 번째 항목 -> None 순서.
        """

        if self.primary_email_address_id:
            for entry in self.email_addresses:
                if entry.id == self.primary_email_address_id and entry.email_address:
                    return entry.email_address

        if self.email_addresses:
            return self.email_addresses[0].email_address or None
        return None

    def to_patch(self) -> UserPatch:
        return UserPatch(
            email=self.primary_email(),
            photo=self.image_url or None,
            first_name=self.first_name or None,
            last_name=self.last_name or None,
        )


class WebhookEvent(BaseModel):
    """검증을 통과한 webhook 이벤트.

    - event_id 는 svix-id 헤더 값이다.
    - user 는 user.* 타입일 때만 채워진다. 그 외 타입은 raw data 만 보관한다.
    """

    event_id: str
    type: str
    data: dict[str, Any]
    user: ClerkUserData | None = None

    @property
    def clerk_id(self) -> str | None:
        if self.user is not None:
            return self.user.id
        value = self.data.get("id")
        return value if isinstance(value, str) else None


def parse_webhook_event(body: bytes, event_id: str) -> WebhookEvent:
    """검증된 raw body 를 WebhookEvent 로 파싱한다. 형식 오류는 ValidationError."""

    try:
        raw = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Invalid request body: {exc}") from exc

    if not isinstance(raw, dict):
        raise ValidationError("Invalid request body: expected a JSON object")

    event_type = raw.get("type")
    data = raw.get("data")
    if not isinstance(event_type, str) or not event_type or not isinstance(data, dict):
        raise ValidationError("Missing data or type in request body")

    user: ClerkUserData | None = None
    if event_type in USER_EVENT_TYPES:
        try:
            user = ClerkUserData.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {event_type} payload: {exc}") from exc

    return WebhookEvent(event_id=event_id, type=event_type, data=data, user=user)
