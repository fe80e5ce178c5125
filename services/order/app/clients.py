"""
Order Service - 下流サービスクライアント

Inventory Service / Payment Service への同期 HTTP 呼び出し。
レスポンスのエラー(JSON の code)を errors.py の型に変換する。

  - 4xx: 相手が処理を拒否した(確定的な失敗)
  - 5xx / 通信エラー: 処理されたか分からない(ServiceUnavailable, ambiguous)
"""

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

import httpx

from .errors import (
    DownstreamError,
    InsufficientStock,
    OrderError,
    PaymentFailed,
    ProductNotFound,
    ServiceUnavailable,
)

logger = logging.getLogger(__name__)


class ServiceClient:
    service = "service"

    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s %s failed: %s", self.service, method, path, e)
            raise ServiceUnavailable(self.service, str(e)) from e
        if resp.status_code >= 500:
            raise ServiceUnavailable(self.service, f"HTTP {resp.status_code}")
        return resp

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        resp = await self._request(method, path, **kwargs)
        if resp.status_code >= 400:
            raise self._translate(resp)
        return resp.json()

    def _translate(self, resp: httpx.Response) -> OrderError:
        body = _body(resp)
        return DownstreamError(
            self.service, resp.status_code, str(body.get("detail", resp.text))
        )


class InventoryClient(ServiceClient):
    service = "inventory-service"

    async def reserve(self, product_id: str, quantity: int, order_id: UUID) -> dict:
        try:
            return await self._call(
                "POST",
                f"/commands/inventory/{product_id}/reserve",
                json={"quantity": quantity, "order_id": str(order_id)},
            )
        except DownstreamError as e:
            if e.downstream_status == 404:
                raise ProductNotFound(product_id) from e
            raise

    async def release(self, product_id: str, quantity: int, order_id: UUID) -> dict:
        return await self._call(
            "POST",
            f"/commands/inventory/{product_id}/release",
            json={"quantity": quantity, "order_id": str(order_id)},
        )

    def _translate(self, resp: httpx.Response) -> OrderError:
        body = _body(resp)
        if body.get("code") == "INSUFFICIENT_STOCK":
            return InsufficientStock(
                body.get("product_id"), body.get("requested"), body.get("available")
            )
        return super()._translate(resp)


class PaymentClient(ServiceClient):
    service = "payment-service"

    async def process(
        self,
        order_id: UUID,
        user_id: str,
        amount: Decimal,
        currency: str,
        method: str,
    ) -> dict:
        return await self._call(
            "POST",
            "/commands/payments/process",
            json={
                "order_id": str(order_id),
                "user_id": user_id,
                "amount": str(amount),
                "currency": currency,
                "method": method,
            },
        )

    async def refund(self, payment_id: str) -> dict:
        return await self._call("POST", f"/commands/payments/{payment_id}/refund")

    async def get_by_order(self, order_id: UUID) -> dict | None:
        resp = await self._request("GET", f"/queries/payments/order/{order_id}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise self._translate(resp)
        return resp.json()

    def _translate(self, resp: httpx.Response) -> OrderError:
        body = _body(resp)
        code = body.get("code")
        if code in ("DUPLICATE_PAYMENT", "PAYMENT_DECLINED", "INVALID_STATE"):
            return PaymentFailed(code, str(body.get("detail")), resp.status_code)
        return super()._translate(resp)


def _body(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
