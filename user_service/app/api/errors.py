"""도메인 예외 -> HTTP 응답 매핑."""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import (
    AlreadyAppliedError,
    DuplicateRecordError,
    GatewayError,
    InsufficientCreditsError,
    MissingHeaderError,
    NotFoundError,
    PaymentNotCompletedError,
    StoreUnavailableError,
    TransactionConflictError,
    UserServiceError,
    ValidationError,
    VerificationFailedError,
)


logger = logging.getLogger(__name__)


# 위에서부터 먼저 매칭된다 (서브클래스를 베이스 클래스보다 앞에 둔다).
_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (MissingHeaderError, status.HTTP_400_BAD_REQUEST),
    (VerificationFailedError, status.HTTP_401_UNAUTHORIZED),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PaymentNotCompletedError, status.HTTP_400_BAD_REQUEST),
    (InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateRecordError, status.HTTP_409_CONFLICT),
    (AlreadyAppliedError, status.HTTP_200_OK),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (TransactionConflictError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: Exception) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_body(message: str, *, success: bool = False) -> dict[str, object]:
    return {"success": success, "message": message}


async def _handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(
            "request failed with %s: %s", type(exc).__name__, exc, exc_info=exc
        )
        message = (
            "Service temporarily unavailable"
            if code == status.HTTP_503_SERVICE_UNAVAILABLE
            else "Payment gateway error"
            if code == status.HTTP_502_BAD_GATEWAY
            else "Internal server error"
        )
        return JSONResponse(status_code=code, content=_error_body(message))

    return JSONResponse(
        status_code=code,
        content=_error_body(str(exc), success=isinstance(exc, AlreadyAppliedError)),
    )


async def _handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UserServiceError, _handle_domain_error)
    app.add_exception_handler(StoreUnavailableError, _handle_domain_error)
    app.add_exception_handler(TransactionConflictError, _handle_domain_error)
    app.add_exception_handler(HTTPException, _handle_http_exception)  # type: ignore[arg-type]
