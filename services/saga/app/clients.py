"""
Saga Orchestrator — 下流サービスのクライアント

各サービスへの HTTP 呼び出しをまとめる。
エラーレスポンスは共通のエラー分類 (services.common.errors) の例外に戻し、
接続できない・タイムアウトした場合は TransientError として扱う。
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

from services.common.errors import (
    MarketplaceError,
    UpstreamServiceError,
    error_from_response,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ServiceClient:
    name = "service"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            resp = await self.http.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise UpstreamServiceError(f"{self.name} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamServiceError(f"{self.name} unavailable: {exc}") from exc
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            error = error_from_response(resp.status_code, body if isinstance(body, dict) else None)
            logger.info("%s %s %s -> %s (%s)", self.name, method, path, resp.status_code, error.code)
            raise error
        return resp.json() if resp.content else None


class OrderServiceClient(ServiceClient):
    name = "order-service"

    async def create_order(self, order: dict) -> dict:
        return await self._request("POST", "/orders", order)

    async def get_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/orders/{order_id}")

    async def apply_payment_fact(self, order_id: str, routing_key: str, payload: dict) -> dict:
        return await self._request(
            "POST",
            f"/orders/{order_id}/payment-facts",
            {"routing_key": routing_key, "payload": payload},
        )

    async def cancel_order(self, order_id: str, reason: str, actor: str = "checkout") -> dict:
        return await self._request(
            "POST", f"/orders/{order_id}/cancel", {"reason": reason, "actor": actor}
        )

    async def mark_refunded(self, order_id: str) -> dict:
        return await self._request("POST", f"/orders/{order_id}/mark-refunded", {})


class PaymentServiceClient(ServiceClient):
    name = "payment-service"

    async def initiate(
        self,
        order_id: str,
        user_id: str,
        amount: Decimal,
        method: str,
        order_total: Decimal,
        card_last4: str | None = None,
        upi_id: str | None = None,
    ) -> dict:
        return await self._request(
            "POST",
            "/payments/initiate",
            {
                "order_id": order_id,
                "user_id": user_id,
                "amount": str(amount),
                "method": method,
                "order_total": str(order_total),
                "card_last4": card_last4,
                "upi_id": upi_id,
            },
        )

    async def confirm(self, payment_id: str, evidence: dict) -> dict:
        return await self._request("POST", f"/payments/{payment_id}/confirm", evidence)

    async def cancel(self, payment_id: str, reason: str) -> dict:
        return await self._request("POST", f"/payments/{payment_id}/cancel", {"reason": reason})

    async def refund(self, payment_id: str, amount: Decimal | None, reason: str) -> dict:
        return await self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            {"amount": str(amount) if amount is not None else None, "reason": reason},
        )

    async def get_for_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/payments/order/{order_id}")


class CartClient(ServiceClient):
    name = "cart-service"

    async def get_snapshot(self, customer_id: str) -> list[dict]:
        body = await self._request("GET", f"/{customer_id}")
        return [
            {
                "product_id": p.get("productId") or p.get("product_id"),
                "product_name": p.get("name") or p.get("product_name"),
                "vendor_id": p.get("vendorId") or p.get("vendor_id"),
                "unit_price": p.get("price", p.get("unit_price")),
                "quantity": p.get("quantity", 1),
            }
            for p in body.get("products", [])
        ]

    async def clear(self, customer_id: str) -> None:
        await self._request("DELETE", f"/{customer_id}/clear")


class ReceiptClient(ServiceClient):
    name = "receipt-service"

    async def create(self, payment_id: str, order_id: str) -> str:
        body = await self._request(
            "POST", "/receipts", {"payment_id": payment_id, "order_id": order_id}
        )
        return body["receipt_id"]


class CatalogClient(ServiceClient):
    name = "catalog-service"

    async def get_price(self, product_id: str) -> Decimal:
        body = await self._request("GET", f"/products/{product_id}")
        product = body.get("data", body)
        return Decimal(str(product["price"]))


class Cart(Protocol):
    async def get_snapshot(self, customer_id: str) -> list[dict]: ...

    async def clear(self, customer_id: str) -> None: ...


class Receipts(Protocol):
    async def create(self, payment_id: str, order_id: str) -> str: ...


class Catalog(Protocol):
    async def get_price(self, product_id: str) -> Decimal: ...


@dataclass
class Collaborators:
    """オーケストレーターが呼び出す相手一式。テストでは偽物を差し込む。"""

    orders: OrderServiceClient
    payments: PaymentServiceClient
    cart: Cart
    receipts: Receipts
    catalog: Catalog | None = None
    _http: list[httpx.AsyncClient] | None = None

    @classmethod
    def from_env(cls, timeout: float = DEFAULT_TIMEOUT) -> "Collaborators":
        clients: list[httpx.AsyncClient] = []

        def http(var: str, default: str) -> httpx.AsyncClient:
            client = httpx.AsyncClient(base_url=os.environ.get(var, default), timeout=timeout)
            clients.append(client)
            return client

        catalog_url = os.environ.get("CATALOG_SERVICE_URL")
        return cls(
            orders=OrderServiceClient(http("ORDER_SERVICE_URL", "http://localhost:8001")),
            payments=PaymentServiceClient(http("PAYMENT_SERVICE_URL", "http://localhost:8002")),
            cart=CartClient(http("CART_SERVICE_URL", "http://localhost:3005")),
            receipts=ReceiptClient(http("RECEIPT_SERVICE_URL", "http://localhost:3009")),
            catalog=CatalogClient(http("CATALOG_SERVICE_URL", catalog_url)) if catalog_url else None,
            _http=clients,
        )

    async def aclose(self) -> None:
        for client in self._http or []:
            await client.aclose()


def describe(exc: Exception) -> str:
    if isinstance(exc, MarketplaceError):
        return f"{exc.code}: {exc.detail}"
    return repr(exc)
