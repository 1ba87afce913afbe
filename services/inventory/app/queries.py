"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import is_low
from .schema import inventory_items, stock_movements


def item_to_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "product_name": row.product_name,
        "quantity": row.quantity,
        "low_stock_threshold": row.low_stock_threshold,
        "low_stock": is_low(row.quantity, row.low_stock_threshold),
        "version": row.version,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_item(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        select(inventory_items).where(inventory_items.c.product_id == product_id)
    )
    row = result.fetchone()
    return item_to_dict(row) if row else None


async def list_items(session: AsyncSession, low_only: bool = False) -> list[dict]:
    query = select(inventory_items).order_by(inventory_items.c.product_id)
    if low_only:
        query = query.where(inventory_items.c.quantity <= inventory_items.c.low_stock_threshold)
    result = await session.execute(query)
    return [item_to_dict(row) for row in result.fetchall()]


async def list_movements(
    session: AsyncSession,
    product_id: str | None = None,
    order_id: str | None = None,
    limit: int = 200,
) -> list[dict]:
    """在庫の増減履歴を新しい順に返す。"""
    query = select(stock_movements).order_by(stock_movements.c.id.desc()).limit(limit)
    if product_id:
        query = query.where(stock_movements.c.product_id == product_id)
    if order_id:
        query = query.where(stock_movements.c.order_id == order_id)
    result = await session.execute(query)
    return [
        {
            "id": row.id,
            "order_id": row.order_id,
            "product_id": row.product_id,
            "kind": row.kind,
            "quantity": row.quantity,
            "reason": row.reason,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
