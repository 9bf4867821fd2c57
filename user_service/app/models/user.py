"""유저 도메인 모델.

users 컬렉션과 1:1 로 매핑되며, clerk_id(외부 identity id)로 식별한다.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


PROCESSED = "processed"


class PatchOutcome(StrEnum):
    UPDATED = "updated"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"


class User(BaseModel):
    """유저 도메인 모델.

    - clerk_id 는 생성 이후 변경되지 않는다.
    - processed_events 는 이 레코드에 적용된 webhook event-id 목록이며 늘어나기만 한다.
    """

    clerk_id: str
    email: str | None = None
    photo: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    credit_balance: int = Field(default=5, ge=0)
    processed_events: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class UserPatch(BaseModel):
    """user.updated 에서 적용할 부분 갱신.

    값이 None 인 필드는 "변경 없음"을 뜻한다.
    """

    email: str | None = None
    photo: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    def to_set_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def event_key(event_id: str) -> str:
    """event-id 를 processed_events 서브도큐먼트 키로 쓸 수 있게 정규화한다.

    Mongo 필드 경로에서 '.' 과 '$' 는 의미를 가지므로 '_' 로 치환한다.
    """

    return event_id.replace(".", "_").replace("$", "_")
