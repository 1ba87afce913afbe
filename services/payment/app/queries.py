"""
Payment Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import payments


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


def payment_to_dict(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "user_id": row.user_id,
        "amount": _money(row.amount),
        "currency": row.currency,
        "method": row.method,
        "status": row.status,
        "gateway_payment_id": row.gateway_payment_id,
        "transaction_id": row.transaction_id,
        "card_last4": row.card_last4,
        "upi_id": row.upi_id,
        "failure_reason": row.failure_reason,
        "refund_amount": _money(row.refund_amount),
        "refund_reason": row.refund_reason,
        "refunded_at": _iso(row.refunded_at),
        "completed_at": _iso(row.completed_at),
        "version": row.version,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


async def get_payment(session: AsyncSession, payment_id: str) -> dict | None:
    result = await session.execute(select(payments).where(payments.c.id == payment_id))
    row = result.fetchone()
    return payment_to_dict(row) if row else None


async def get_payment_for_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(payments).where(payments.c.order_id == order_id))
    row = result.fetchone()
    return payment_to_dict(row) if row else None


async def list_payments_for_user(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(payments)
        .where(payments.c.user_id == user_id)
        .order_by(payments.c.created_at.desc())
    )
    return [payment_to_dict(row) for row in result.fetchall()]
