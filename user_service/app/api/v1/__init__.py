from fastapi import APIRouter

from ..health import router as health_router
from .credits import router as credits_router
from .payments import router as payments_router
from .webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(webhooks_router, tags=["webhooks"])
api_router.include_router(
    credits_router
)  # prefix는 router 파일 내부에서 정의되어 있음 (/credits)
api_router.include_router(payments_router)
api_router.include_router(health_router, tags=["health"])
