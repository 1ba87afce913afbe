"""
Common — Inbox (処理済み correlation_id の永続セット)

プロセス内メモリではなく DB に記録するので、再起動しても忘れない。
claim はハンドラのトランザクションの最初の文として実行し、
状態変更と一緒にコミットする。ハンドラが失敗すれば claim も
ロールバックされるので、再配信時にもう一度処理できる。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .schema import processed_messages

logger = logging.getLogger(__name__)


async def claim(session: AsyncSession, consumer: str, correlation_id: str) -> bool:
    """初めて見る correlation_id なら True、処理済みなら False を返す。"""
    try:
        await session.execute(
            insert(processed_messages).values(
                consumer=consumer,
                correlation_id=correlation_id,
                processed_at=datetime.now(timezone.utc),
            )
        )
    except IntegrityError:
        await session.rollback()
        logger.info("Duplicate %s for %s, skipped", correlation_id, consumer)
        return False
    return True


async def purge(session: AsyncSession, older_than: datetime) -> int:
    result = await session.execute(
        delete(processed_messages).where(processed_messages.c.processed_at < older_than)
    )
    await session.commit()
    return result.rowcount or 0


async def run_janitor(
    session_factory: async_sessionmaker,
    retention: timedelta,
    shutdown_event: asyncio.Event,
    interval: float = 3600.0,
) -> None:
    """保持期間を過ぎた Inbox レコードを定期的に削除する。"""
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                removed = await purge(session, datetime.now(timezone.utc) - retention)
            if removed:
                logger.info("Purged %d inbox entries", removed)
        except Exception:
            logger.exception("Inbox purge failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
