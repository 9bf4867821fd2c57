"""크레딧 잔액 조회/차감 라우터."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from ..deps import get_current_clerk_id
from ..schemas.credits import (
    ConsumeCreditsRequest,
    ConsumeCreditsResponse,
    CreditsResponse,
)
from ...services.balance_ledger import BalanceLedger, get_balance_ledger


router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("", response_model=CreditsResponse, summary="크레딧 잔액 조회")
def get_user_credits(
    clerk_id: Annotated[str, Depends(get_current_clerk_id)],
    ledger: Annotated[BalanceLedger, Depends(get_balance_ledger)],
) -> CreditsResponse:
    return CreditsResponse(credits=ledger.get_balance(clerk_id))


@router.post("/consume", response_model=ConsumeCreditsResponse, summary="크레딧 차감")
def consume_credits(
    req: ConsumeCreditsRequest,
    clerk_id: Annotated[str, Depends(get_current_clerk_id)],
    ledger: Annotated[BalanceLedger, Depends(get_balance_ledger)],
) -> ConsumeCreditsResponse:
    """잔액이 부족하면 402. 차감은 조건부 $inc 한 번으로 끝난다."""
    remaining = ledger.deduct_credits(clerk_id, req.amount)
    return ConsumeCreditsResponse(credits=remaining)
