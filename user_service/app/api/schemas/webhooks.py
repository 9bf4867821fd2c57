from __future__ import annotations

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    """webhook 수신 확인. 실제 반영은 응답 이후 백그라운드에서 진행된다."""

    success: bool = True
    message: str
