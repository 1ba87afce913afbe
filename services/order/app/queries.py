"""
Order Service — クエリハンドラ (Read 側)

orders / order_items テーブルから注文を読み出す。
"""

import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, orders


def _iso(value):
    return value.isoformat() if value else None


def _item_to_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "product_name": row.product_name,
        "vendor_id": row.vendor_id,
        "quantity": row.quantity,
        "unit_price": float(row.unit_price),
        "subtotal": float(row.subtotal),
    }


def _order_to_dict(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "order_number": row.order_number,
        "customer_id": row.customer_id,
        "status": row.status,
        "payment_method": row.payment_method,
        "payment_status": row.payment_status,
        "payment_id": row.payment_id,
        "items": items,
        "shipping_address": row.shipping_address,
        "billing_address": row.billing_address,
        "subtotal": float(row.subtotal),
        "shipping_cost": float(row.shipping_cost),
        "tax": float(row.tax),
        "discount": float(row.discount),
        "total_amount": float(row.total_amount),
        "tracking_number": row.tracking_number,
        "carrier": row.carrier,
        "notes": row.notes,
        "cancellation_reason": row.cancellation_reason,
        "refund_required": bool(row.refund_required),
        "version": row.version,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "timestamps": {
            "pending_payment_at": _iso(row.pending_payment_at),
            "confirmed_at": _iso(row.confirmed_at),
            "processing_at": _iso(row.processing_at),
            "shipped_at": _iso(row.shipped_at),
            "out_for_delivery_at": _iso(row.out_for_delivery_at),
            "delivered_at": _iso(row.delivered_at),
            "cancelled_at": _iso(row.cancelled_at),
            "refunded_at": _iso(row.refunded_at),
        },
    }


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.id)
    )
    grouped: dict[str, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        grouped[row.order_id].append(_item_to_dict(row))
    return grouped


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == str(order_id)))
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _order_to_dict(row, items[row.id])


async def list_orders(
    session: AsyncSession,
    *,
    customer_id: str | None = None,
    vendor_id: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """顧客・出品者・ステータスで絞り込んだ注文一覧 (新しい順、ページング付き)。"""
    conditions = []
    if customer_id:
        conditions.append(orders.c.customer_id == customer_id)
    if status:
        conditions.append(orders.c.status == status)
    if vendor_id:
        conditions.append(
            orders.c.id.in_(
                select(order_items.c.order_id).where(order_items.c.vendor_id == vendor_id)
            )
        )

    total = (
        await session.execute(select(func.count()).select_from(orders).where(*conditions))
    ).scalar_one()
    result = await session.execute(
        select(orders)
        .where(*conditions)
        .order_by(orders.c.created_at.desc(), orders.c.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return {
        "orders": [_order_to_dict(row, items[row.id]) for row in rows],
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if limit else 0,
    }


async def get_tracking(session: AsyncSession, order_id: str) -> dict | None:
    order = await get_order(session, order_id)
    if order is None:
        return None
    return {
        "order_id": order["id"],
        "order_number": order["order_number"],
        "status": order["status"],
        "tracking_number": order["tracking_number"],
        "carrier": order["carrier"],
        "timestamps": order["timestamps"],
    }
