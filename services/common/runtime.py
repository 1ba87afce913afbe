"""
Common — サービスの実行時リソース

DB セッションファクトリ、ブローカー、Outbox Relay と
バックグラウンドタスクをまとめて管理する。

テストではセッションファクトリとブローカー (InMemoryBroker) を注入し、
本番では start() が PostgreSQL と Redis に接続する。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

import redis.asyncio as aioredis
from fastapi import Request
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from . import inbox
from .broker import BrokerClient, RedisStreamBroker
from .config import ServiceSettings
from .outbox import OutboxRelay
from .resilience import CircuitBreaker, ResilientPublisher
from .schema import init_schema

logger = logging.getLogger(__name__)


def create_session_factory(
    database_url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker]:
    engine = create_async_engine(database_url, echo=echo)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class ServiceRuntime:
    def __init__(
        self,
        settings: ServiceSettings,
        metadata: MetaData,
        *,
        session_factory: async_sessionmaker | None = None,
        broker: BrokerClient | None = None,
    ) -> None:
        self.settings = settings
        self.metadata = metadata
        self.session_factory = session_factory
        self.broker = broker
        self.outbox: OutboxRelay | None = None
        self._engine: AsyncEngine | None = None
        self._redis: aioredis.Redis | None = None
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        if session_factory is not None and broker is not None:
            self.outbox = self._build_outbox()

    def _build_outbox(self) -> OutboxRelay:
        publisher = ResilientPublisher(
            self.broker,
            CircuitBreaker(
                failure_threshold=self.settings.breaker_failure_threshold,
                reset_timeout=self.settings.breaker_reset_timeout,
            ),
            attempts=self.settings.publish_attempts,
            base_delay=self.settings.publish_backoff_base,
            max_delay=self.settings.publish_backoff_max,
        )
        return OutboxRelay(self.session_factory, publisher, self.settings.service_name)

    async def start(self) -> None:
        if self.session_factory is None:
            self._engine, self.session_factory = create_session_factory(
                self.settings.database_url
            )
            await init_schema(self._engine, self.metadata)
        if self.broker is None:
            self._redis = aioredis.from_url(self.settings.redis_url, decode_responses=True)
            self.broker = RedisStreamBroker(
                self._redis,
                self.settings.consumer_name,
                max_deliveries=self.settings.max_deliveries,
                redeliver_after_ms=self.settings.redeliver_after_ms,
            )
        if self.outbox is None:
            self.outbox = self._build_outbox()
        logger.info("%s runtime started", self.settings.service_name)

    def spawn(self, job: Callable[[asyncio.Event], Awaitable[None]]) -> None:
        """shutdown イベントを受け取るループをバックグラウンドで起動する。"""
        self._tasks.append(asyncio.create_task(job(self._shutdown)))

    def spawn_defaults(self) -> None:
        self.spawn(self.broker.run)
        self.spawn(
            lambda stop: self.outbox.run(stop, interval=self.settings.outbox_interval)
        )
        self.spawn(
            lambda stop: inbox.run_janitor(
                self.session_factory,
                timedelta(days=self.settings.inbox_retention_days),
                stop,
            )
        )

    async def stop(self) -> None:
        self._shutdown.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._redis is not None:
            await self._redis.aclose()
        if self._engine is not None:
            await self._engine.dispose()
        logger.info("%s runtime stopped", self.settings.service_name)


def get_runtime(request: Request) -> ServiceRuntime:
    return request.app.state.runtime
