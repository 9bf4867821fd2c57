from __future__ import annotations

from common.mongo.errors import StoreUnavailableError, TransactionConflictError


class UserServiceError(Exception):
    """Base exception for all user-service errors."""


class MissingHeaderError(UserServiceError):
    """Required webhook transport headers are absent."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required headers: {', '.join(missing)}")


class VerificationFailedError(UserServiceError):
    """Webhook signature or timestamp could not be verified."""


class ValidationError(UserServiceError):
    """Malformed payload or request input."""


class InvalidPlanError(ValidationError):
    """Plan id is not part of the plan catalog."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Invalid plan selected: {plan_id!r}")


class NotFoundError(UserServiceError):
    """Record absent for a query or mutation."""


class DuplicateRecordError(UserServiceError):
    """Unique index violation reported by the record store."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class AlreadyAppliedError(UserServiceError):
    """Payment was already credited. Callers treat this as a benign success."""

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"payment already processed (transaction_id={transaction_id})")


class RaceRetryExhaustedError(UserServiceError):
    """Concurrent user creation did not settle within the retry budget."""


class InsufficientCreditsError(UserServiceError):
    """Balance is lower than the requested deduction."""


class PaymentNotCompletedError(UserServiceError):
    """Gateway reports the order as not paid yet."""

    def __init__(self, order_id: str, status: str) -> None:
        self.order_id = order_id
        self.status = status
        super().__init__(f"payment not completed (order_id={order_id} status={status})")


class GatewayError(UserServiceError):
    """Payment gateway call failed (transport, timeout or non-2xx)."""


__all__ = [
    "UserServiceError",
    "MissingHeaderError",
    "VerificationFailedError",
    "ValidationError",
    "InvalidPlanError",
    "NotFoundError",
    "DuplicateRecordError",
    "AlreadyAppliedError",
    "RaceRetryExhaustedError",
    "InsufficientCreditsError",
    "PaymentNotCompletedError",
    "GatewayError",
    "StoreUnavailableError",
    "TransactionConflictError",
]
