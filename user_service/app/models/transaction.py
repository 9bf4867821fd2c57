"""결제 트랜잭션 / 요금제 도메인 모델."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from ..exceptions import InvalidPlanError


class Plan(StrEnum):
    BASIC = "Basic"
    ADVANCED = "Advanced"
    BUSINESS = "Business"


@dataclass(frozen=True, slots=True)
class PlanSpec:
    plan: Plan
    credits: int
    price: int  # 통화 단위 (minor unit 아님)


PLAN_CATALOG: dict[Plan, PlanSpec] = {
    Plan.BASIC: PlanSpec(plan=Plan.BASIC, credits=100, price=10),
    Plan.ADVANCED: PlanSpec(plan=Plan.ADVANCED, credits=500, price=50),
    Plan.BUSINESS: PlanSpec(plan=Plan.BUSINESS, credits=5000, price=250),
}


def resolve_plan(plan_id: str) -> PlanSpec:
    """planId 문자열을 요금제 스펙으로 변환한다. 카탈로그에 없으면 InvalidPlanError."""

    try:
        return PLAN_CATALOG[Plan(plan_id)]
    except ValueError as exc:
        raise InvalidPlanError(plan_id) from exc


class Transaction(BaseModel):
    """결제 트랜잭션 도메인 모델.

    - payment 는 false -> true 로 정확히 한 번만 바뀐다.
    - order_id 는 게이트웨이 주문 생성 후에 채워진다.
    """

    id: str | None = None
    clerk_id: str
    plan: Plan
    credits: int = Field(ge=0)
    amount: int = Field(ge=0)
    currency: str
    payment: bool = False
    order_id: str | None = None
    date: datetime
    created_at: datetime
    updated_at: datetime
