"""
Order Service — 照合スイープ (Reconciliation Sweep)

決済確認がタイムアウトしたまま放置された注文 (Pending Payment) を
一定時間後にキャンセルする。キャンセルは order.cancelled として発行され、
在庫サービスが引き当て分を戻す。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common.outbox import OutboxRelay

from . import commands

logger = logging.getLogger(__name__)


async def sweep_once(
    session_factory: async_sessionmaker,
    outbox: OutboxRelay,
    timeout: timedelta,
    now: datetime | None = None,
) -> list[str]:
    cutoff = (now or datetime.now(timezone.utc)) - timeout
    async with session_factory() as session:
        expired = await commands.expire_pending_payments(session, outbox, cutoff)
    if expired:
        logger.info("Cancelled %d orders stuck in Pending Payment", len(expired))
    return expired


async def run_sweeper(
    session_factory: async_sessionmaker,
    outbox: OutboxRelay,
    timeout: timedelta,
    shutdown_event: asyncio.Event,
    interval: float = 60.0,
) -> None:
    while not shutdown_event.is_set():
        try:
            await sweep_once(session_factory, outbox, timeout)
        except Exception:
            logger.exception("Reconciliation sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
