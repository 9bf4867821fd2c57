"""Clerk(Svix) webhook 수신 라우터.

서명 검증과 본문 파싱까지만 요청 경로에서 처리하고 즉시 200 을 반환한다.
users 컬렉션 반영은 BackgroundTasks 로 응답 이후에 실행된다.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from ..deps import get_signature_verifier
from ..schemas.webhooks import WebhookAckResponse
from ...models.webhook import parse_webhook_event
from ...services.idempotency_tracker import (
    IdempotencyTracker,
    get_idempotency_tracker,
)
from ...services.signature_verifier import SignatureVerifier, extract_required_headers
from ...services.webhook_reconciler import WebhookReconciler, get_webhook_reconciler


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks", response_model=WebhookAckResponse, summary="Clerk webhook")
async def clerk_webhooks(
    request: Request,
    background_tasks: BackgroundTasks,
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    tracker: IdempotencyTracker = Depends(get_idempotency_tracker),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookAckResponse:
    # 헤더가 빠진 요청은 본문을 읽기 전에 거절한다.
    extract_required_headers(request.headers)

    # 서명은 원문 바이트 기준이므로 파싱 전에 그대로 읽는다.
    body = await request.body()
    event_id = verifier.verify(body, request.headers)
    event = parse_webhook_event(body, event_id)

    extra = {"event_id": event_id, "event_type": event.type, "clerk_id": event.clerk_id}
    if not tracker.begin(event_id):
        logger.info(
            "duplicate webhook ignored type=%s id=%s", event.type, event_id, extra=extra
        )
        return WebhookAckResponse(message="Event already processed")

    logger.info("webhook accepted type=%s id=%s", event.type, event_id, extra=extra)
    background_tasks.add_task(reconciler.process, event)
    return WebhookAckResponse(message="Webhook received")
