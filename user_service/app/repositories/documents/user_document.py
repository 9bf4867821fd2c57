from __future__ import annotations

from pydantic import Field

from common.mongo.types import BaseDocument

from ...models.user import User


class UserDocument(BaseDocument):
    """MongoDB users 컬렉션 도큐먼트 모델."""

    clerk_id: str
    email: str | None = None
    photo: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    credit_balance: int = 0
    processed_events: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, user: User) -> "UserDocument":
        return cls.model_validate(user.model_dump())

    def to_domain(self) -> User:
        return User(
            clerk_id=self.clerk_id,
            email=self.email,
            photo=self.photo,
            first_name=self.first_name,
            last_name=self.last_name,
            # 레거시 문서에 음수가 남아 있어도 도메인 불변식(>= 0)은 지킨다.
            credit_balance=max(0, self.credit_balance),
            processed_events=dict(self.processed_events),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
