"""
Common — 発行側の回復性 (Retry + Circuit Breaker)

ブローカーへの再接続を無限タイマーで繰り返すのではなく、
  - 指数バックオフ付きの有限回リトライ
  - サーキットブレーカー (closed / open / half_open)
として明示的にモデル化する。
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from .broker import BrokerClient
from .envelope import Envelope
from .errors import BrokerUnavailableError, CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    連続失敗が閾値に達すると OPEN になり、呼び出しを即座に拒否する。
    reset_timeout 経過後は HALF_OPEN で 1 回だけ試し、
    成功すれば CLOSED、失敗すれば再び OPEN に戻る。
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    def allow(self) -> bool:
        if self.state is CircuitState.OPEN:
            if self._clock() - self._opened_at >= self.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                return True
            return False
        return True

    def record_success(self) -> None:
        self._failures = 0
        self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self._trip()
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._trip()

    def _trip(self) -> None:
        self.state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning("Circuit opened after %d failures", self._failures)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 5,
    base_delay: float = 0.2,
    max_delay: float = 5.0,
    retry_on: tuple[type[BaseException], ...] = (BrokerUnavailableError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """operation を最大 attempts 回まで実行する。待ち時間は 2 倍ずつ伸びる。"""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                raise
            delay = min(max_delay, base_delay * 2 ** (attempt - 1))
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")


class ResilientPublisher:
    """BrokerClient.publish をリトライとサーキットブレーカーで包む。"""

    def __init__(
        self,
        broker: BrokerClient,
        breaker: CircuitBreaker | None = None,
        *,
        attempts: int = 5,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.broker = broker
        self.breaker = breaker or CircuitBreaker()
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def publish(self, envelope: Envelope) -> None:
        async def attempt() -> None:
            if not self.breaker.allow():
                raise CircuitOpenError("broker circuit is open")
            try:
                await self.broker.publish(envelope.routing_key, envelope)
            except BrokerUnavailableError:
                self.breaker.record_failure()
                raise
            self.breaker.record_success()

        await retry_with_backoff(
            attempt,
            attempts=self.attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
        )
