"""
Order Service — コマンドハンドラ (Write 側)

コマンドは状態を変更する操作で、同じトランザクションで
  1. orders 行を比較交換 (WHERE version = :expected) で更新
  2. イベントをイベントストアに追記 (= Outbox)
を行い、コミット後に Outbox Relay が事実をブローカーへ送る。

同時に 2 つのコマンドが同じ注文を更新しようとした場合、
後から来た方は ConcurrentUpdateError になり何も書き込まない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common import event_store, topics
from services.common.errors import (
    ConcurrentUpdateError,
    EmptyCartError,
    IllegalTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    ValidationError,
)
from services.common.outbox import OutboxRelay

from . import queries
from .aggregate import (
    CANCELLABLE,
    OPERATOR_TRANSITIONS,
    STATUS_TIMESTAMPS,
    OrderStatus,
    check_transition,
    compute_totals,
    freeze_address,
    freeze_line_items,
    new_order_number,
    parse_payment_method,
    to_money,
)
from .events import (
    OrderCancelled,
    OrderCreated,
    OrderLine,
    OrderRefundRequired,
    OrderStatusChanged,
)
from .schema import order_items, orders

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _load(session: AsyncSession, order_id: str):
    result = await session.execute(select(orders).where(orders.c.id == str(order_id)))
    row = result.fetchone()
    if row is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return row


async def _lines(session: AsyncSession, order_id: str) -> list[OrderLine]:
    result = await session.execute(
        select(order_items).where(order_items.c.order_id == order_id).order_by(order_items.c.id)
    )
    return [
        OrderLine(
            product_id=row.product_id,
            vendor_id=row.vendor_id,
            quantity=row.quantity,
            unit_price=row.unit_price,
        )
        for row in result.fetchall()
    ]


async def _compare_and_set(session: AsyncSession, row, **values: Any) -> int:
    """version が読んだ時のままなら更新し、新しい version を返す。"""
    new_version = row.version + 1
    result = await session.execute(
        update(orders)
        .where(orders.c.id == row.id, orders.c.version == row.version)
        .values(version=new_version, updated_at=_now(), **values)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(f"Order {row.id} was modified concurrently")
    return new_version


def _status_values(new_status: OrderStatus, at: datetime) -> dict:
    values: dict[str, Any] = {"status": new_status.value}
    column = STATUS_TIMESTAMPS.get(new_status)
    if column:
        values[column] = at
    return values


async def _change_status(
    session: AsyncSession,
    row,
    new_status: OrderStatus,
    actor: str,
    **values: Any,
) -> int:
    current = OrderStatus(row.status)
    check_transition(current, new_status)
    now = _now()
    version = await _compare_and_set(session, row, **_status_values(new_status, now), **values)
    await event_store.append_event(
        session,
        row.id,
        AGGREGATE_TYPE,
        topics.ORDER_STATUS_CHANGED,
        OrderStatusChanged(
            order_id=row.id,
            customer_id=row.customer_id,
            from_status=current.value,
            to_status=new_status.value,
            actor=actor,
            timestamp=now,
        ),
        version,
    )
    logger.info("Order %s: %s -> %s (%s)", row.id, current.value, new_status.value, actor)
    return version


async def _cancel(session: AsyncSession, row, reason: str, actor: str, **values: Any) -> int:
    current = OrderStatus(row.status)
    check_transition(current, OrderStatus.CANCELLED)
    now = _now()
    version = await _compare_and_set(
        session,
        row,
        **_status_values(OrderStatus.CANCELLED, now),
        cancellation_reason=reason,
        **values,
    )
    await event_store.append_event(
        session,
        row.id,
        AGGREGATE_TYPE,
        topics.ORDER_CANCELLED,
        OrderCancelled(
            order_id=row.id,
            customer_id=row.customer_id,
            previous_status=current.value,
            reason=reason,
            items=await _lines(session, row.id),
            timestamp=now,
        ),
        version,
    )
    logger.info("Order %s cancelled from %s by %s: %s", row.id, current.value, actor, reason)
    return version


async def _flag_refund_required(
    session: AsyncSession,
    row,
    version: int,
    paid_with: str | None,
    amount: Decimal | None,
    reason: str,
    **values: Any,
) -> int:
    """
    支払い済みなのにキャンセルされた注文を手動返金の対象にする。
    同じトランザクションで既に更新した行なら version にその結果を渡す。
    """
    new_version = version + 1
    result = await session.execute(
        update(orders)
        .where(orders.c.id == row.id, orders.c.version == version)
        .values(refund_required=True, version=new_version, updated_at=_now(), **values)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(f"Order {row.id} was modified concurrently")
    await event_store.append_event(
        session,
        row.id,
        AGGREGATE_TYPE,
        topics.ORDER_REFUND_REQUIRED,
        OrderRefundRequired(
            order_id=row.id,
            customer_id=row.customer_id,
            payment_id=paid_with,
            amount=amount,
            reason=reason,
            timestamp=_now(),
        ),
        new_version,
    )
    logger.warning("Order %s needs a manual refund: %s", row.id, reason)
    return new_version


async def _finish(session: AsyncSession, outbox: OutboxRelay, order_id: str) -> dict:
    await session.commit()
    await outbox.publish_pending()
    return await queries.get_order(session, order_id)


# ── 注文作成 ─────────────────────────────────────


async def create_order(
    session: AsyncSession,
    outbox: OutboxRelay,
    *,
    customer_id: str,
    items: list[dict],
    shipping_address: dict,
    payment_method: str,
    billing_address: dict | None = None,
    discount: Decimal | str | int = 0,
    notes: str | None = None,
    order_id: str | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 明細の単価と住所を凍結し、金額を一度だけ計算する
    2. Pending で作成 (order.created)
    3. 同じトランザクションで代金引換なら Confirmed、
       オンライン決済なら Pending Payment へ進める

    order_id を指定した場合、同じ ID の注文が既にあればそれを返す (冪等)。
    """
    if not items:
        raise EmptyCartError("Cart is empty")
    method = parse_payment_method(payment_method)
    shipping = freeze_address(shipping_address)
    billing = freeze_address(billing_address) if billing_address else shipping
    lines = freeze_line_items(items)
    totals = compute_totals(lines, to_money(discount))

    order_id = str(order_id or uuid4())
    existing = await queries.get_order(session, order_id)
    if existing is not None:
        logger.info("Order %s already exists, returning it", order_id)
        return existing

    now = _now()
    try:
        await session.execute(
            insert(orders).values(
                id=order_id,
                order_number=new_order_number(),
                customer_id=str(customer_id),
                status=OrderStatus.PENDING.value,
                payment_method=method.value,
                payment_status="pending",
                shipping_address=shipping,
                billing_address=billing,
                subtotal=totals.subtotal,
                shipping_cost=totals.shipping_cost,
                tax=totals.tax,
                discount=totals.discount,
                total_amount=totals.total_amount,
                notes=notes,
                refund_required=False,
                version=1,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order_id,
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "vendor_id": line.vendor_id,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "subtotal": line.subtotal,
                }
                for line in lines
            ],
        )
    except IntegrityError:
        # 同じ order_id で同時に作成された
        await session.rollback()
        existing = await queries.get_order(session, order_id)
        if existing is None:
            raise
        return existing

    row = await _load(session, order_id)
    await event_store.append_event(
        session,
        order_id,
        AGGREGATE_TYPE,
        topics.ORDER_CREATED,
        OrderCreated(
            order_id=order_id,
            order_number=row.order_number,
            customer_id=row.customer_id,
            payment_method=method.value,
            items=[
                OrderLine(
                    product_id=line.product_id,
                    vendor_id=line.vendor_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for line in lines
            ],
            subtotal=totals.subtotal,
            shipping_cost=totals.shipping_cost,
            tax=totals.tax,
            discount=totals.discount,
            total_amount=totals.total_amount,
            timestamp=now,
        ),
        1,
    )

    next_status = OrderStatus.PENDING_PAYMENT if method.is_online else OrderStatus.CONFIRMED
    await _change_status(session, row, next_status, "checkout")
    logger.info("Order %s created (%s, total %s)", order_id, method.value, totals.total_amount)
    return await _finish(session, outbox, order_id)


# ── 決済の事実 ───────────────────────────────────


async def apply_payment_fact(
    session: AsyncSession,
    outbox: OutboxRelay,
    order_id: str,
    routing_key: str,
    payload: dict,
) -> dict:
    """
    payment.completed / payment.failed を注文に反映する。

    状態に基づいて冪等:
      completed  Pending / Pending Payment → Confirmed
                 Cancelled → 手動返金フラグ (一度だけ)
                 それ以外 → 何もしない
      failed     Pending Payment → Cancelled
                 それ以外 → 何もしない
    """
    row = await _load(session, order_id)
    status = OrderStatus(row.status)
    payment_id = payload.get("payment_id")

    if routing_key == topics.PAYMENT_COMPLETED:
        if status in (OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT):
            await _change_status(
                session,
                row,
                OrderStatus.CONFIRMED,
                "payment",
                payment_status="paid",
                payment_id=payment_id,
            )
            return await _finish(session, outbox, order_id)
        if status is OrderStatus.CANCELLED and not row.refund_required:
            # タイムアウト等でキャンセルした後に決済が完了した
            amount = payload.get("amount")
            await _flag_refund_required(
                session,
                row,
                row.version,
                payment_id,
                to_money(amount) if amount is not None else None,
                "Payment completed after the order was cancelled",
                payment_status="paid",
                payment_id=payment_id,
            )
            return await _finish(session, outbox, order_id)
        logger.info("payment.completed for order %s in %s ignored", order_id, status.value)
        return await queries.get_order(session, order_id)

    if routing_key == topics.PAYMENT_FAILED:
        if status is OrderStatus.PENDING_PAYMENT:
            await _cancel(
                session,
                row,
                payload.get("reason") or "Payment failed",
                "payment",
                payment_status="failed",
                payment_id=payment_id or row.payment_id,
            )
            return await _finish(session, outbox, order_id)
        logger.info("payment.failed for order %s in %s ignored", order_id, status.value)
        return await queries.get_order(session, order_id)

    raise ValidationError(f"Not a payment fact: {routing_key}")


# ── 運用者操作 ───────────────────────────────────


async def transition_status(
    session: AsyncSession,
    outbox: OutboxRelay,
    order_id: str,
    new_status: str,
    actor: str,
    *,
    tracking_number: str | None = None,
    carrier: str | None = None,
    reason: str | None = None,
) -> dict:
    """
    運用者によるステータス変更 (前進のみ)。

    Cancelled への変更は cancel_order に委ねる。
    Refunded へは返金アクション以外では進めない。
    """
    try:
        target = OrderStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {new_status}") from None
    if target is OrderStatus.CANCELLED:
        return await cancel_order(session, outbox, order_id, reason or f"Cancelled by {actor}", actor)

    row = await _load(session, order_id)
    current = OrderStatus(row.status)
    if OPERATOR_TRANSITIONS.get(current) is not target:
        raise IllegalTransitionError(
            f"Order cannot move from {current.value} to {target.value}"
        )
    values: dict[str, Any] = {}
    if target is OrderStatus.SHIPPED:
        values["tracking_number"] = tracking_number or row.tracking_number
        values["carrier"] = carrier or row.carrier
    if target is OrderStatus.DELIVERED and row.payment_method == "cod":
        values["payment_status"] = "paid"
    await _change_status(session, row, target, actor, **values)
    return await _finish(session, outbox, order_id)


async def cancel_order(
    session: AsyncSession,
    outbox: OutboxRelay,
    order_id: str,
    reason: str,
    actor: str = "customer",
) -> dict:
    """
    注文キャンセルコマンド

    Shipped 以降はキャンセルできない。既にキャンセル済みなら何もしない。
    支払い済みの注文は手動返金の対象として印を付ける。
    """
    row = await _load(session, order_id)
    status = OrderStatus(row.status)
    if status is OrderStatus.CANCELLED:
        return await queries.get_order(session, order_id)
    if status not in CANCELLABLE:
        raise OrderNotCancellableError(f"Order cannot be cancelled in {status.value} status")

    version = await _cancel(session, row, reason, actor)
    if row.payment_status == "paid":
        await _flag_refund_required(
            session,
            row,
            version,
            row.payment_id,
            row.total_amount,
            f"Paid order cancelled: {reason}",
        )
    return await _finish(session, outbox, order_id)


async def mark_refunded(
    session: AsyncSession,
    outbox: OutboxRelay,
    order_id: str,
    actor: str = "refund",
) -> dict:
    """返金済みの配達完了注文を Refunded にする。既に Refunded なら何もしない。"""
    row = await _load(session, order_id)
    if OrderStatus(row.status) is OrderStatus.REFUNDED:
        return await queries.get_order(session, order_id)
    await _change_status(session, row, OrderStatus.REFUNDED, actor, payment_status="refunded")
    return await _finish(session, outbox, order_id)


async def expire_pending_payments(
    session: AsyncSession,
    outbox: OutboxRelay,
    older_than: datetime,
) -> list[str]:
    """
    Pending Payment のまま older_than より前に止まっている注文をキャンセルする。
    他のコマンドと競合した注文は飛ばす (次の掃除で再評価される)。
    """
    result = await session.execute(
        select(orders.c.id)
        .where(
            orders.c.status == OrderStatus.PENDING_PAYMENT.value,
            orders.c.pending_payment_at < older_than,
        )
        .order_by(orders.c.pending_payment_at)
    )
    expired = []
    for order_id in result.scalars().all():
        row = await _load(session, order_id)
        if OrderStatus(row.status) is not OrderStatus.PENDING_PAYMENT:
            continue
        try:
            await _cancel(session, row, "Payment not completed in time", "reconciliation")
            await session.commit()
        except ConcurrentUpdateError:
            await session.rollback()
            logger.info("Order %s changed during sweep, skipped", order_id)
            continue
        expired.append(order_id)
    if expired:
        await outbox.publish_pending()
    return expired
