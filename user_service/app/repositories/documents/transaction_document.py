from __future__ import annotations

from common.mongo.types import BaseDocument, MongoDateTime, from_object_id

from ...models.transaction import Plan, Transaction


class TransactionDocument(BaseDocument):
    """MongoDB transactions 컬렉션 도큐먼트 모델."""

    clerk_id: str
    plan: str
    credits: int
    amount: int
    currency: str
    payment: bool = False
    order_id: str | None = None
    date: MongoDateTime

    @classmethod
    def from_domain(cls, tx: Transaction) -> "TransactionDocument":
        data = tx.model_dump(exclude={"id"})
        data["plan"] = tx.plan.value
        return cls.model_validate(data)

    def to_domain(self) -> Transaction:
        return Transaction(
            id=from_object_id(self.id),
            clerk_id=self.clerk_id,
            plan=Plan(self.plan),
            credits=self.credits,
            amount=self.amount,
            currency=self.currency,
            payment=self.payment,
            order_id=self.order_id,
            date=self.date,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
