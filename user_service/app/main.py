from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.logger import setup_logger
from common.middleware.request_trace import RequestTraceMiddleware
from common.mongo.client import close_client, get_client

from .api.errors import register_exception_handlers
from .api.health import router as health_router
from .api.v1 import api_router
from .config import allow_unverified_tokens, get_clerk_jwt_key


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - framework hook
    # 기동 시 연결/인덱스 보장. 실패하면 서비스가 뜨지 않는다.
    get_client()
    logger.info("mongo connection established")
    if get_clerk_jwt_key() is None and allow_unverified_tokens():
        logger.warning(
            "CLERK_JWT_KEY is not set; session tokens are accepted WITHOUT signature verification"
        )
    try:
        yield
    finally:
        close_client()


def create_app() -> FastAPI:
    setup_logger()
    app = FastAPI(
        title="BG Removal User Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    # 공통 Request/Span ID 로그 미들웨어
    app.add_middleware(RequestTraceMiddleware)
    register_exception_handlers(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(api_router, prefix="/api/user")

    return app


app = create_app()


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "4000"))
    uvicorn.run(
        "user_service.app.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
