"""
Notification Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import notifications


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "title": row.title,
        "message": row.message,
        "type": row.type,
        "is_read": row.is_read,
        "data": row.data,
        "source_event": row.source_event,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def list_for_user(
    session: AsyncSession,
    user_id: str,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
) -> list[dict]:
    """受信者の通知一覧(新しい順)"""
    stmt = select(notifications).where(notifications.c.user_id == user_id)
    if unread_only:
        stmt = stmt.where(notifications.c.is_read.is_(False))
    stmt = (
        stmt.order_by(notifications.c.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [_to_dict(row) for row in result.fetchall()]


async def unread_count(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(notifications)
        .where(notifications.c.user_id == user_id, notifications.c.is_read.is_(False))
    )
    return result.scalar_one()
