"""
Common — イベントストア

状態変更と同じトランザクションでイベントを追記する。
コミットされた行がそのまま Outbox になり、OutboxRelay が
published_at の無い行を順番にブローカーへ送る。
バージョン番号による楽観的ロックで同時書き込みを防ぐ。
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import event_store


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID | str,
    aggregate_type: str,
    event_type: str,
    event_data: BaseModel | dict[str, Any],
    version: int,
) -> str:
    """
    イベントをストアに追記し、その event_id (= correlation_id) を返す。

    同じ aggregate_id + version の組み合わせが既に存在すると
    UNIQUE 制約違反で失敗する → 競合を検知できる。
    """
    if isinstance(event_data, BaseModel):
        event_data = event_data.model_dump(mode="json")
    event_id = str(uuid4())
    await session.execute(
        insert(event_store).values(
            event_id=event_id,
            aggregate_id=str(aggregate_id),
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=event_data,
            version=version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return event_id


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "event_id": row.event_id,
        "aggregate_id": row.aggregate_id,
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": row.event_data,
        "version": row.version,
        "created_at": row.created_at,
        "published_at": row.published_at,
    }


async def load_events(session: AsyncSession, aggregate_id: UUID | str) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == str(aggregate_id))
        .order_by(event_store.c.version)
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession, limit: int = 500) -> list[dict]:
    """すべてのイベントを記録順に返す（デバッグ用）。"""
    result = await session.execute(
        select(event_store).order_by(event_store.c.id).limit(limit)
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def load_unpublished(session: AsyncSession, limit: int = 100) -> list[dict]:
    result = await session.execute(
        select(event_store)
        .where(event_store.c.published_at.is_(None))
        .order_by(event_store.c.id)
        .limit(limit)
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def mark_published(session: AsyncSession, row_id: int) -> None:
    await session.execute(
        update(event_store)
        .where(event_store.c.id == row_id)
        .values(published_at=datetime.now(timezone.utc))
    )
