"""
Notification Service — 事実から通知への投影 (Projection)

CQRS の Read 側: ブローカーから受信した事実を、受信者ごとの通知に変換して記録する。
どの事実にも対応する通知が無ければ何もしない。
在庫の事実は顧客ではなく運用担当 (OPERATIONS_RECIPIENT) 宛てに記録する。
"""

from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common import topics
from services.common.envelope import Envelope
from services.common.errors import NotFoundError, ValidationError

from .schema import notifications

OPERATIONS_RECIPIENT = "operations"
TYPES = {"order", "payment", "promotion", "system", "review"}


def _order_created(p: dict) -> tuple[str, str, str, str]:
    return (
        p["customer_id"],
        "order",
        "Order placed",
        f"Your order {p['order_number']} has been placed. Total: ₹{p['total_amount']}",
    )


def _order_status_changed(p: dict) -> tuple[str, str, str, str]:
    return (
        p["customer_id"],
        "order",
        f"Order {p['to_status']}",
        f"Your order is now {p['to_status']}.",
    )


def _order_cancelled(p: dict) -> tuple[str, str, str, str]:
    return (
        p["customer_id"],
        "order",
        "Order cancelled",
        f"Your order has been cancelled: {p['reason']}",
    )


def _order_refund_required(p: dict) -> tuple[str, str, str, str]:
    return (
        p["customer_id"],
        "payment",
        "Refund in progress",
        "Your payment arrived after the order was cancelled. A refund will be issued.",
    )


def _payment_completed(p: dict) -> tuple[str, str, str, str]:
    return (
        p["user_id"],
        "payment",
        "Payment successful",
        f"We received your payment of ₹{p['amount']}.",
    )


def _payment_failed(p: dict) -> tuple[str, str, str, str]:
    return (
        p["user_id"],
        "payment",
        "Payment failed",
        f"Your payment could not be completed: {p['reason']}",
    )


def _payment_refunded(p: dict) -> tuple[str, str, str, str]:
    return (
        p["user_id"],
        "payment",
        "Refund processed",
        f"₹{p['refund_amount']} has been refunded to you.",
    )


def _payment_cancelled(p: dict) -> tuple[str, str, str, str]:
    return (
        p["user_id"],
        "payment",
        "Payment cancelled",
        f"Your payment was cancelled: {p['reason']}",
    )


def _inventory_low(p: dict) -> tuple[str, str, str, str]:
    return (
        OPERATIONS_RECIPIENT,
        "system",
        "Low stock",
        f"Product {p['product_id']} is down to {p['quantity']} "
        f"(threshold {p['low_stock_threshold']}).",
    )


RENDERERS: dict[str, Callable[[dict], tuple[str, str, str, str]]] = {
    topics.ORDER_CREATED: _order_created,
    topics.ORDER_STATUS_CHANGED: _order_status_changed,
    topics.ORDER_CANCELLED: _order_cancelled,
    topics.ORDER_REFUND_REQUIRED: _order_refund_required,
    topics.PAYMENT_COMPLETED: _payment_completed,
    topics.PAYMENT_FAILED: _payment_failed,
    topics.PAYMENT_REFUNDED: _payment_refunded,
    topics.PAYMENT_CANCELLED: _payment_cancelled,
    topics.INVENTORY_LOW: _inventory_low,
}


async def _record(
    session: AsyncSession,
    user_id: str,
    type_: str,
    title: str,
    message: str,
    data: dict | None,
    source_event: str | None,
) -> str:
    notification_id = str(uuid4())
    await session.execute(
        insert(notifications).values(
            id=notification_id,
            user_id=user_id,
            title=title,
            message=message,
            type=type_,
            is_read=False,
            data=data,
            source_event=source_event,
            created_at=datetime.now(timezone.utc),
        )
    )
    return notification_id


async def handle_fact(session: AsyncSession, envelope: Envelope) -> str | None:
    """事実を通知に投影する。コミットは呼び出し側 (subscriber) が行う。"""
    render = RENDERERS.get(envelope.routing_key)
    if render is None:
        return None
    user_id, type_, title, message = render(envelope.payload)
    return await _record(
        session, user_id, type_, title, message, envelope.payload, envelope.routing_key
    )


async def send(
    session: AsyncSession,
    user_id: str,
    title: str,
    message: str,
    type_: str = "system",
    data: dict | None = None,
) -> str:
    """内部 API からの直接送信"""
    if type_ not in TYPES:
        raise ValidationError(f"Unknown notification type: {type_}")
    notification_id = await _record(session, user_id, type_, title, message, data, None)
    await session.commit()
    return notification_id


async def mark_read(session: AsyncSession, notification_id: str) -> None:
    result = await session.execute(
        update(notifications).where(notifications.c.id == notification_id).values(is_read=True)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Notification {notification_id} not found")
    await session.commit()


async def mark_all_read(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        update(notifications)
        .where(notifications.c.user_id == user_id, notifications.c.is_read.is_(False))
        .values(is_read=True)
    )
    await session.commit()
    return result.rowcount or 0


async def remove(session: AsyncSession, notification_id: str) -> None:
    result = await session.execute(
        delete(notifications).where(notifications.c.id == notification_id)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Notification {notification_id} not found")
    await session.commit()
