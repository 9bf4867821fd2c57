"""Razorpay 주문 API 클라이언트."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..config import GatewayConfig, load_gateway_config
from ..exceptions import GatewayError


logger = logging.getLogger(__name__)


ORDER_STATUS_PAID = "paid"


class GatewayOrder(BaseModel):
    """게이트웨이 주문. 응답의 나머지 필드는 그대로 보존해서 클라이언트에 전달한다."""

    model_config = ConfigDict(extra="allow")

    id: str
    amount: int
    currency: str
    receipt: str | None = None
    status: str


class PaymentGatewayInterface(Protocol):
    def create_order(
        self, amount: int, currency: str, receipt: str
    ) -> GatewayOrder:  # pragma: no cover - Protocol
        ...

    def fetch_order(self, order_id: str) -> GatewayOrder:  # pragma: no cover - Protocol
        ...


class RazorpayGateway(PaymentGatewayInterface):
    """Razorpay REST API (basic auth) 를 httpx 로 호출한다.

    전송 오류, 타임아웃, 2xx 가 아닌 응답은 모두 GatewayError 로 변환한다. 재시도하지 않는다.
    """

    def __init__(self, config: GatewayConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(
            base_url=config.base_url,
            auth=(config.key_id, config.key_secret),
            timeout=config.timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        """amount 는 minor unit (예: paise) 이다."""

        payload = {"amount": amount, "currency": currency, "receipt": receipt}
        return self._request("POST", "/orders", json=payload)

    def fetch_order(self, order_id: str) -> GatewayOrder:
        return self._request("GET", f"/orders/{order_id}")

    def _request(self, method: str, path: str, **kwargs: object) -> GatewayOrder:
        try:
            resp = self._client.request(method, path, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as exc:
            raise GatewayError(f"gateway timeout: {method} {path}") from exc
        except httpx.RequestError as exc:
            raise GatewayError(f"gateway request failed: {method} {path}: {exc}") from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            body_sample = resp.text[:500]
            logger.warning(
                "gateway returned status=%d for %s %s body=%s",
                resp.status_code,
                method,
                path,
                body_sample,
            )
            raise GatewayError(
                f"gateway error: status code {resp.status_code}, {method} {path}"
            )

        try:
            return GatewayOrder.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as exc:
            raise GatewayError(f"unexpected gateway response for {method} {path}") from exc


def get_payment_gateway() -> Iterator[PaymentGatewayInterface]:
    """FastAPI DI용 게이트웨이 팩토리. 키가 설정되지 않았으면 RuntimeError."""

    gateway = RazorpayGateway(load_gateway_config())
    try:
        yield gateway
    finally:
        gateway.close()
