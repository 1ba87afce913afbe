"""
Common — Outbox Relay

コマンドは「状態 + イベント行」を 1 トランザクションでコミットし、
その後この Relay がイベント行をブローカーへ送る。
ブローカーが落ちていても行は残るので、次回の flush で必ず送られる。
送信後に published_at を記録する前に落ちた場合は同じ correlation_id で
再送されるが、受信側の Inbox が重複を吸収する。
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import event_store
from .envelope import Envelope
from .errors import TransientError
from .resilience import ResilientPublisher

logger = logging.getLogger(__name__)


class OutboxRelay:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        publisher: ResilientPublisher,
        source_service: str,
        batch_size: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.source_service = source_service
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    def _to_envelope(self, row: dict) -> Envelope:
        return Envelope(
            routing_key=row["event_type"],
            payload=row["event_data"],
            correlation_id=row["event_id"],
            timestamp=row["created_at"],
            source_service=self.source_service,
        )

    async def flush(self) -> int:
        """未送信のイベントを記録順に送る。送信できた件数を返す。"""
        published = 0
        async with self._lock:
            async with self.session_factory() as session:
                rows = await event_store.load_unpublished(session, self.batch_size)
                for row in rows:
                    try:
                        await self.publisher.publish(self._to_envelope(row))
                    except TransientError as exc:
                        # 順序を保つため、失敗した行以降は次回に回す
                        logger.warning(
                            "Outbox publish deferred for %s: %s", row["event_id"], exc
                        )
                        break
                    await event_store.mark_published(session, row["id"])
                    await session.commit()
                    published += 1
        return published

    async def publish_pending(self) -> None:
        """
        コマンドのコミット直後に呼ぶ。

        ここで失敗してもコマンド自体は成功している。
        残った行はバックグラウンドの run() が送る。
        """
        try:
            await self.flush()
        except Exception:
            logger.exception("Outbox flush after commit failed")

    async def run(self, shutdown_event: asyncio.Event, interval: float = 1.0) -> None:
        while not shutdown_event.is_set():
            try:
                await self.flush()
            except Exception:
                logger.exception("Outbox relay error")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
