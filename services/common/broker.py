"""
Common — メッセージブローカー (Broker Client)

各サービスはグローバルなシングルトンではなく、注入された BrokerClient を使う。

  publish(routing_key, envelope)              事実を一度だけ発行する
  subscribe(queue, routing_keys, handler)     永続キューをルーティングキーに束縛する
  run(shutdown_event)                         キューを消費し続ける

配送保証:
  - at-least-once。ハンドラは correlation_id で冪等にすること
  - ハンドラが正常終了した後にだけ ACK する
  - 失敗したメッセージは一度だけ再配信され、それでも失敗すれば Dead Letter へ
  - 同じルーティングキー内では発行順に届く。キーをまたいだ順序保証はない

実装は 2 つ:
  RedisStreamBroker  本番用。ルーティングキーごとに Redis Stream、
                     キューごとに Consumer Group を作る
  InMemoryBroker     テスト用。同じ意味論をメモリ上で再現する
"""

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .envelope import Envelope
from .errors import BrokerUnavailableError

logger = logging.getLogger(__name__)

Handler = Callable[[Envelope], Awaitable[None]]


class BrokerClient(Protocol):
    async def publish(self, routing_key: str, envelope: Envelope) -> None: ...

    async def subscribe(
        self, queue: str, routing_keys: Iterable[str], handler: Handler
    ) -> None: ...

    async def run(self, shutdown_event: asyncio.Event) -> None: ...


@dataclass
class DeadLetter:
    queue: str
    envelope: Envelope | None
    error: str
    attempts: int
    raw: str | None = None
    dead_lettered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


def _check_routing_key(routing_key: str, envelope: Envelope) -> None:
    if routing_key != envelope.routing_key:
        raise ValueError(
            f"routing key mismatch: {routing_key} != {envelope.routing_key}"
        )


# ── In-Memory (テスト用) ─────────────────────────


@dataclass
class _Delivery:
    envelope: Envelope
    attempts: int = 0


class InMemoryBroker:
    """
    メモリ上のトピック型ブローカー。

    キューは subscribe 時に作られ、それ以降に発行された事実を
    ハンドラの稼働状況に関係なく保持する (drain するまで残る)。
    """

    def __init__(self, max_deliveries: int = 2) -> None:
        self.max_deliveries = max_deliveries
        self.published: list[Envelope] = []
        self.dead_letters: list[DeadLetter] = []
        self._bindings: dict[str, list[str]] = defaultdict(list)
        self._queues: dict[str, deque[_Delivery]] = {}
        self._handlers: dict[str, Handler] = {}

    async def publish(self, routing_key: str, envelope: Envelope) -> None:
        _check_routing_key(routing_key, envelope)
        self.published.append(envelope)
        for queue in self._bindings.get(routing_key, []):
            self._queues[queue].append(_Delivery(envelope))

    async def subscribe(
        self, queue: str, routing_keys: Iterable[str], handler: Handler
    ) -> None:
        routing_keys = list(routing_keys)
        self._queues.setdefault(queue, deque())
        self._handlers[queue] = handler
        for key in routing_keys:
            if queue not in self._bindings[key]:
                self._bindings[key].append(queue)
        logger.info("Queue %s bound to %s", queue, routing_keys)

    def published_keys(self) -> list[str]:
        return [e.routing_key for e in self.published]

    def pending(self, queue: str | None = None) -> int:
        if queue is not None:
            return len(self._queues.get(queue, ()))
        return sum(len(q) for q in self._queues.values())

    async def _deliver_round(self) -> int:
        delivered = 0
        for queue, deliveries in list(self._queues.items()):
            handler = self._handlers[queue]
            for _ in range(len(deliveries)):
                delivery = deliveries.popleft()
                delivered += 1
                try:
                    await handler(delivery.envelope)
                except Exception as exc:
                    delivery.attempts += 1
                    if delivery.attempts >= self.max_deliveries:
                        logger.error(
                            "Dead-lettered %s on %s after %d attempts: %s",
                            delivery.envelope.correlation_id,
                            queue,
                            delivery.attempts,
                            exc,
                        )
                        self.dead_letters.append(
                            DeadLetter(
                                queue=queue,
                                envelope=delivery.envelope,
                                error=repr(exc),
                                attempts=delivery.attempts,
                            )
                        )
                    else:
                        logger.warning(
                            "Handler failed for %s on %s, redelivering: %s",
                            delivery.envelope.correlation_id,
                            queue,
                            exc,
                        )
                        deliveries.append(delivery)
        return delivered

    async def drain(self, max_rounds: int = 50) -> int:
        """キューが空になるまで配送する。処理したメッセージ数を返す。"""
        total = 0
        for _ in range(max_rounds):
            delivered = await self._deliver_round()
            if delivered == 0:
                return total
            total += delivered
        raise RuntimeError(f"broker did not settle after {max_rounds} rounds")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            await self.drain()
            await asyncio.sleep(0.05)


# ── Redis Streams (本番用) ───────────────────────


class RedisStreamBroker:
    """
    Redis Streams によるブローカー実装。

    Redis Pub/Sub は fire-and-forget でダウン中の事実を失うため使わない。
    Stream + Consumer Group ならキュー作成以降の事実がすべて残り、
    ACK されるまで Pending Entries List に保持される。

      facts:<routing_key>       事実のストリーム
      <queue>                   Consumer Group 名 = 永続キュー名
      facts:dlq:<queue>         Dead Letter ストリーム
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        consumer_name: str,
        *,
        stream_prefix: str = "facts",
        max_deliveries: int = 2,
        redeliver_after_ms: int = 30_000,
        block_ms: int = 1_000,
        batch_size: int = 10,
    ) -> None:
        self.redis = redis
        self.consumer_name = consumer_name
        self.stream_prefix = stream_prefix
        self.max_deliveries = max_deliveries
        self.redeliver_after_ms = redeliver_after_ms
        self.block_ms = block_ms
        self.batch_size = batch_size
        self._queues: dict[str, tuple[Handler, list[str]]] = {}

    def stream_for(self, routing_key: str) -> str:
        return f"{self.stream_prefix}:{routing_key}"

    def dead_letter_stream(self, queue: str) -> str:
        return f"{self.stream_prefix}:dlq:{queue}"

    async def publish(self, routing_key: str, envelope: Envelope) -> None:
        _check_routing_key(routing_key, envelope)
        try:
            await self.redis.xadd(
                self.stream_for(routing_key), {"envelope": envelope.to_json()}
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise BrokerUnavailableError(str(exc)) from exc
        logger.debug("Published %s (%s)", routing_key, envelope.correlation_id)

    async def subscribe(
        self, queue: str, routing_keys: Iterable[str], handler: Handler
    ) -> None:
        streams = []
        for key in routing_keys:
            stream = self.stream_for(key)
            try:
                # "$": キュー初回作成以降の事実だけを受け取る
                await self.redis.xgroup_create(stream, queue, id="$", mkstream=True)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise BrokerUnavailableError(str(exc)) from exc
            streams.append(stream)
        self._queues[queue] = (handler, streams)
        logger.info("Queue %s bound to %s", queue, streams)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                for queue, (handler, streams) in list(self._queues.items()):
                    await self._reclaim(queue, handler, streams)
                    await self._read_new(queue, handler, streams)
            except (RedisConnectionError, RedisTimeoutError):
                logger.warning("Redis unavailable, consumer backing off")
                await asyncio.sleep(1.0)
            except Exception:
                logger.exception("Consumer loop error")
                await asyncio.sleep(1.0)

    async def _read_new(self, queue: str, handler: Handler, streams: list[str]) -> None:
        block = max(1, self.block_ms // max(1, len(self._queues)))
        response = await self.redis.xreadgroup(
            groupname=queue,
            consumername=self.consumer_name,
            streams={stream: ">" for stream in streams},
            count=self.batch_size,
            block=block,
        )
        for stream, messages in response or []:
            for message_id, fields in messages:
                await self._process(queue, handler, stream, message_id, fields)

    async def _reclaim(self, queue: str, handler: Handler, streams: list[str]) -> None:
        """アイドル時間を超えた未 ACK メッセージを再配信、または Dead Letter へ送る。"""
        for stream in streams:
            result = await self.redis.xautoclaim(
                stream,
                queue,
                self.consumer_name,
                min_idle_time=self.redeliver_after_ms,
                start_id="0-0",
                count=self.batch_size,
            )
            for message_id, fields in result[1]:
                if not fields:
                    continue
                pending = await self.redis.xpending_range(
                    stream, queue, min=message_id, max=message_id, count=1
                )
                deliveries = pending[0]["times_delivered"] if pending else 1
                if deliveries > self.max_deliveries:
                    await self._dead_letter(
                        queue,
                        stream,
                        message_id,
                        fields,
                        f"handler failed after {deliveries - 1} deliveries",
                    )
                    continue
                await self._process(queue, handler, stream, message_id, fields)

    async def _process(
        self,
        queue: str,
        handler: Handler,
        stream: str,
        message_id: str,
        fields: dict,
    ) -> None:
        raw = fields.get("envelope")
        try:
            envelope = Envelope.from_json(raw)
        except (PydanticValidationError, TypeError) as exc:
            # 解析できないメッセージは再配信しても直らない
            await self._dead_letter(queue, stream, message_id, fields, repr(exc))
            return
        try:
            await handler(envelope)
        except Exception:
            logger.warning(
                "Handler failed for %s on %s, left pending for redelivery",
                envelope.correlation_id,
                queue,
                exc_info=True,
            )
            return
        await self.redis.xack(stream, queue, message_id)

    async def _dead_letter(
        self, queue: str, stream: str, message_id: str, fields: dict, error: str
    ) -> None:
        await self.redis.xadd(
            self.dead_letter_stream(queue),
            {
                "envelope": fields.get("envelope") or "",
                "source_stream": stream,
                "message_id": message_id,
                "error": error,
            },
        )
        await self.redis.xack(stream, queue, message_id)
        logger.error("Dead-lettered %s from %s on %s: %s", message_id, stream, queue, error)

    async def dead_letters(self, queue: str, count: int = 100) -> list[DeadLetter]:
        """運用者向け: Dead Letter ストリームの中身を返す。"""
        entries = await self.redis.xrange(self.dead_letter_stream(queue), count=count)
        letters = []
        for _, fields in entries:
            raw = fields.get("envelope") or None
            try:
                envelope = Envelope.from_json(raw) if raw else None
            except PydanticValidationError:
                envelope = None
            letters.append(
                DeadLetter(
                    queue=queue,
                    envelope=envelope,
                    error=fields.get("error", ""),
                    attempts=self.max_deliveries,
                    raw=raw,
                )
            )
        return letters
