"""
Saga Orchestrator — チェックアウト Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  失敗時は補償トランザクション(Compensating Transaction)を実行して
  整合性を保つ。2 フェーズコミットは使わない。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Cart からスナップショットを取得 (空なら拒否)                  │
  │  2. (Catalog があれば) 単価を凍結                                │
  │  3. Order Service に注文作成を依頼                               │
  │     ├─ cod → 注文は Confirmed。カートを空にして終了               │
  │     └─ オンライン決済 → 4 へ                                     │
  │  4. Payment Service で initiate → confirm (タイムアウト付き)      │
  │     ├─ completed → 注文を Confirmed、領収書を発行、カートを空に    │
  │     │    (その間に注文が取り消されていたら返金待ちとして補償扱い)│
  │     ├─ failed    → 注文を Cancelled、カートは残す                │
  │     └─ 例外/タイムアウト → 決済と注文をキャンセル (補償)           │
  └──────────────────────────────────────────────────────────────┘

注文作成後の失敗は必ず注文のキャンセルで終わる。
それでも Pending Payment に残った注文は Order Service の照合スイープが片付ける。
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common import topics
from services.common.errors import (
    EmptyCartError,
    IllegalTransitionError,
    MarketplaceError,
    NotFoundError,
    OrderNotCancellableError,
    PaymentAlreadyFinalizedError,
    PaymentTimeoutError,
    ValidationError,
)

from .clients import Collaborators, describe
from .schema import checkouts

logger = logging.getLogger(__name__)


class CheckoutStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"
    COMPENSATED = "compensated"
    REJECTED = "rejected"


class CheckoutCommand(BaseModel):
    customer_id: str
    shipping_address: dict[str, Any]
    billing_address: dict[str, Any] | None = None
    payment_method: str
    # ゲートウェイから受け取った証跡 (card_last4, upi_id, gateway_payment_id など)
    gateway_evidence: dict[str, Any] = Field(default_factory=dict)
    discount: Decimal = Decimal("0")
    notes: str | None = None
    checkout_id: str | None = None


class CheckoutResult(BaseModel):
    checkout_id: str
    success: bool = False
    status: CheckoutStatus = CheckoutStatus.RUNNING
    order_id: str | None = None
    order_number: str | None = None
    order_status: str | None = None
    total_amount: float | None = None
    payment_id: str | None = None
    payment_status: str | None = None
    receipt_id: str | None = None
    reason: str | None = None
    saga_log: list[dict] = Field(default_factory=list)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CheckoutOrchestrator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        collaborators: Collaborators,
        session_factory: async_sessionmaker,
        confirm_timeout: float = 10.0,
    ) -> None:
        self.c = collaborators
        self.session_factory = session_factory
        self.confirm_timeout = confirm_timeout

    # ── saga_log ─────────────────────────────────

    @staticmethod
    def _begin(result: CheckoutResult, action: str) -> dict:
        step = {
            "step": len(result.saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": _now(),
        }
        result.saga_log.append(step)
        return step

    @staticmethod
    def _complete(step: dict) -> None:
        step["status"] = "COMPLETED"

    @staticmethod
    def _fail(step: dict, exc: Exception) -> None:
        step["status"] = "FAILED"
        step["error"] = describe(exc)

    # ── 永続化 ───────────────────────────────────

    async def _save(self, customer_id: str, result: CheckoutResult) -> None:
        values = {
            "customer_id": customer_id,
            "order_id": result.order_id,
            "payment_id": result.payment_id,
            "receipt_id": result.receipt_id,
            "status": result.status.value,
            "reason": result.reason,
            "saga_log": result.saga_log,
            "updated_at": datetime.now(timezone.utc),
        }
        async with self.session_factory() as session:
            exists = await session.execute(
                select(checkouts.c.id).where(checkouts.c.id == result.checkout_id)
            )
            if exists.first() is None:
                await session.execute(
                    insert(checkouts).values(
                        id=result.checkout_id, created_at=values["updated_at"], **values
                    )
                )
            else:
                await session.execute(
                    update(checkouts).where(checkouts.c.id == result.checkout_id).values(**values)
                )
            await session.commit()

    async def get_checkout(self, checkout_id: str) -> dict | None:
        async with self.session_factory() as session:
            result = await session.execute(select(checkouts).where(checkouts.c.id == checkout_id))
            row = result.fetchone()
        if row is None:
            return None
        return {
            "checkout_id": row.id,
            "customer_id": row.customer_id,
            "order_id": row.order_id,
            "payment_id": row.payment_id,
            "receipt_id": row.receipt_id,
            "status": row.status,
            "reason": row.reason,
            "saga_log": row.saga_log,
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }

    # ── チェックアウト ───────────────────────────

    async def execute(self, command: CheckoutCommand) -> CheckoutResult:
        """
        チェックアウト Saga を実行する。

        注文作成前の失敗 (空のカート、不正な住所など) は例外として呼び出し元に返す。
        注文作成後の失敗は補償を行い、結果の status に記録する。
        """
        if command.checkout_id:
            previous = await self.get_checkout(command.checkout_id)
            if previous and previous["status"] != CheckoutStatus.RUNNING.value:
                logger.info("Checkout %s already finished", command.checkout_id)
                return CheckoutResult(
                    checkout_id=previous["checkout_id"],
                    success=previous["status"] == CheckoutStatus.COMPLETED.value,
                    status=CheckoutStatus(previous["status"]),
                    order_id=previous["order_id"],
                    payment_id=previous["payment_id"],
                    receipt_id=previous["receipt_id"],
                    reason=previous["reason"],
                    saga_log=previous["saga_log"],
                )

        result = CheckoutResult(checkout_id=command.checkout_id or str(uuid4()))
        await self._save(command.customer_id, result)
        try:
            await self._run(command, result)
        except MarketplaceError as exc:
            if result.order_id is not None:
                raise
            result.status = CheckoutStatus.REJECTED
            result.reason = describe(exc)
            await self._save(command.customer_id, result)
            raise
        await self._save(command.customer_id, result)
        logger.info(
            "Checkout %s finished: %s (order %s)", result.checkout_id, result.status.value, result.order_id
        )
        return result

    async def _run(self, command: CheckoutCommand, result: CheckoutResult) -> None:
        # ── Step: カートのスナップショット ──────────
        step = self._begin(result, "GetCartSnapshot")
        try:
            items = await self.c.cart.get_snapshot(command.customer_id)
            if not items:
                raise EmptyCartError("Cart is empty")
            self._complete(step)
        except MarketplaceError as exc:
            self._fail(step, exc)
            raise

        # ── Step: 単価の凍結 (Catalog) ──────────────
        if self.c.catalog is not None:
            step = self._begin(result, "FreezePrices")
            try:
                for item in items:
                    item["unit_price"] = str(await self.c.catalog.get_price(item["product_id"]))
                self._complete(step)
            except MarketplaceError as exc:
                self._fail(step, exc)
                raise

        # ── Step: 注文作成 ──────────────────────────
        order_id = str(uuid4())
        step = self._begin(result, "CreateOrder")
        try:
            order = await self.c.orders.create_order(
                {
                    "order_id": order_id,
                    "customer_id": command.customer_id,
                    "items": [{**item, "unit_price": str(item["unit_price"])} for item in items],
                    "shipping_address": command.shipping_address,
                    "billing_address": command.billing_address,
                    "payment_method": command.payment_method,
                    "discount": str(command.discount),
                    "notes": command.notes,
                }
            )
            self._complete(step)
        except ValidationError as exc:
            self._fail(step, exc)
            raise
        except MarketplaceError as exc:
            # 注文が作られたかどうか分からない → キャンセルしておく
            self._fail(step, exc)
            result.order_id = order_id
            await self._compensate(result, f"Order creation failed: {describe(exc)}")
            return

        result.order_id = order["id"]
        result.order_number = order["order_number"]
        result.order_status = order["status"]
        result.total_amount = order["total_amount"]

        if command.payment_method == "cod":
            await self._clear_cart(command, result)
            result.status = CheckoutStatus.COMPLETED
            result.success = True
            return

        await self._pay(command, result, order)

    async def _pay(self, command: CheckoutCommand, result: CheckoutResult, order: dict) -> None:
        evidence = command.gateway_evidence
        total = Decimal(str(order["total_amount"]))

        # ── Step: 決済開始 ──────────────────────────
        step = self._begin(result, "InitiatePayment")
        try:
            payment = await self.c.payments.initiate(
                order_id=result.order_id,
                user_id=command.customer_id,
                amount=total,
                method=command.payment_method,
                order_total=total,
                card_last4=evidence.get("card_last4"),
                upi_id=evidence.get("upi_id"),
            )
            self._complete(step)
        except MarketplaceError as exc:
            self._fail(step, exc)
            await self._compensate(result, f"Payment initiation failed: {describe(exc)}")
            return
        result.payment_id = payment["id"]
        result.payment_status = payment["status"]

        # ── Step: 決済確認 (タイムアウト付き) ────────
        step = self._begin(result, "ConfirmPayment")
        try:
            payment = await asyncio.wait_for(
                self.c.payments.confirm(
                    payment["id"],
                    {"gateway_payment_id": payment["gateway_payment_id"], **evidence},
                ),
                timeout=self.confirm_timeout,
            )
            self._complete(step)
        except asyncio.TimeoutError:
            exc = PaymentTimeoutError(f"Payment not confirmed within {self.confirm_timeout}s")
            self._fail(step, exc)
            await self._compensate(result, describe(exc), cancel_payment=True)
            return
        except MarketplaceError as exc:
            self._fail(step, exc)
            await self._compensate(result, f"Payment confirmation failed: {describe(exc)}", cancel_payment=True)
            return
        result.payment_status = payment["status"]

        if payment["status"] == "completed":
            await self._on_payment_completed(command, result, payment)
        else:
            await self._on_payment_failed(result, payment)

    async def _on_payment_completed(
        self, command: CheckoutCommand, result: CheckoutResult, payment: dict
    ) -> None:
        # ここから先は決済済みなので、失敗しても注文はキャンセルしない。
        # 注文への反映はブローカー経由の payment.completed でも届く。
        step = self._begin(result, "ConfirmOrder")
        try:
            order = await self.c.orders.apply_payment_fact(
                result.order_id,
                topics.PAYMENT_COMPLETED,
                {
                    "order_id": result.order_id,
                    "payment_id": payment["id"],
                    "amount": payment["amount"],
                },
            )
            result.order_status = order["status"]
            self._complete(step)
        except MarketplaceError as exc:
            self._fail(step, exc)
        else:
            if order["status"] != "Confirmed":
                # 決済の確認中に注文が取り消された (在庫不足など)。
                # 返金は注文側の order.refund_required から行い、カートは残す
                result.status = CheckoutStatus.COMPENSATED
                result.reason = order.get("cancellation_reason") or f"Order is {order['status']}"
                logger.warning(
                    "Order %s ended %s after payment %s completed",
                    result.order_id,
                    order["status"],
                    payment["id"],
                )
                return

        step = self._begin(result, "CreateReceipt")
        try:
            result.receipt_id = await self.c.receipts.create(payment["id"], result.order_id)
            self._complete(step)
        except MarketplaceError as exc:
            self._fail(step, exc)

        await self._clear_cart(command, result)
        result.status = CheckoutStatus.COMPLETED
        result.success = True

    async def _on_payment_failed(self, result: CheckoutResult, payment: dict) -> None:
        reason = payment.get("failure_reason") or "Payment failed"
        step = self._begin(result, "CancelOrder (COMPENSATING)")
        try:
            order = await self.c.orders.apply_payment_fact(
                result.order_id,
                topics.PAYMENT_FAILED,
                {"order_id": result.order_id, "payment_id": payment["id"], "reason": reason},
            )
            result.order_status = order["status"]
            self._complete(step)
        except MarketplaceError as exc:
            self._fail(step, exc)
            await self._cancel_order(result, reason)
        # カートは残す
        result.status = CheckoutStatus.PAYMENT_FAILED
        result.reason = reason

    async def _clear_cart(self, command: CheckoutCommand, result: CheckoutResult) -> None:
        step = self._begin(result, "ClearCart")
        try:
            await self.c.cart.clear(command.customer_id)
            self._complete(step)
        except MarketplaceError as exc:
            self._fail(step, exc)

    # ── 補償トランザクション ─────────────────────

    async def _compensate(
        self, result: CheckoutResult, reason: str, cancel_payment: bool = False
    ) -> None:
        if cancel_payment and result.payment_id:
            step = self._begin(result, "CancelPayment (COMPENSATING)")
            try:
                payment = await self.c.payments.cancel(result.payment_id, reason)
                result.payment_status = payment["status"]
                self._complete(step)
            except MarketplaceError as exc:
                # 既に完了していた場合は、注文側の手動返金フローで扱われる
                self._fail(step, exc)
        await self._cancel_order(result, reason)
        result.status = CheckoutStatus.COMPENSATED
        result.reason = reason

    async def _cancel_order(self, result: CheckoutResult, reason: str) -> None:
        step = self._begin(result, "CancelOrder (COMPENSATING)")
        try:
            order = await self.c.orders.cancel_order(result.order_id, reason)
            result.order_status = order["status"]
            self._complete(step)
        except NotFoundError as exc:
            # 注文は作られていなかった
            step["status"] = "SKIPPED"
            step["error"] = describe(exc)
        except MarketplaceError as exc:
            self._fail(step, exc)
            logger.error("Compensation failed for order %s: %s", result.order_id, describe(exc))

    # ── 在庫不足・返金 ───────────────────────────

    async def cancel_for_insufficient_stock(self, order_id: str, product_id: str) -> None:
        """inventory.insufficient を受けて注文 (と未完了の決済) を取り消す。"""
        reason = f"Insufficient stock for {product_id}"
        try:
            await self.c.orders.cancel_order(order_id, reason, actor="inventory")
        except OrderNotCancellableError:
            logger.warning("Order %s could not be cancelled for insufficient stock", order_id)
        try:
            payment = await self.c.payments.get_for_order(order_id)
        except NotFoundError:
            return
        if payment["status"] in ("initiated", "processing"):
            try:
                await self.c.payments.cancel(payment["id"], reason)
            except PaymentAlreadyFinalizedError:
                logger.info("Payment %s finalized before it could be cancelled", payment["id"])

    async def refund_order(
        self, order_id: str, amount: Decimal | None = None, reason: str = "Customer refund"
    ) -> dict:
        """配達済みの注文を返金する。決済の返金 → 注文を Refunded の順。"""
        order = await self.c.orders.get_order(order_id)
        if order["status"] not in ("Delivered", "Refunded"):
            raise IllegalTransitionError(
                f"Only delivered orders can be refunded (order is {order['status']})"
            )
        payment = await self.c.payments.get_for_order(order_id)
        if order["status"] == "Delivered":
            payment = await self.c.payments.refund(payment["id"], amount, reason)
            order = await self.c.orders.mark_refunded(order_id)
        logger.info("Order %s refunded (payment %s)", order_id, payment["id"])
        return {"order": order, "payment": payment}
