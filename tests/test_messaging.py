import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from services.common import event_store, inbox, topics
from services.common.broker import InMemoryBroker
from services.common.envelope import Envelope
from services.common.errors import BrokerUnavailableError, CircuitOpenError
from services.common.outbox import OutboxRelay
from services.common.resilience import (
    CircuitBreaker,
    CircuitState,
    ResilientPublisher,
    retry_with_backoff,
)
from services.common.schema import metadata as common_metadata


def _envelope(key=topics.ORDER_CREATED, correlation_id=None, **payload):
    return Envelope.new(key, payload or {"order_id": "o-1"}, "test", correlation_id)


# ── Envelope ─────────────────────────────────────


def test_envelope_round_trips_through_json():
    env = _envelope(correlation_id="c-1")
    decoded = Envelope.from_json(env.to_json())
    assert decoded == env
    assert decoded.correlation_id == "c-1"


@pytest.mark.parametrize("key", ["Order.Created", "order", "order..created", ""])
def test_envelope_rejects_malformed_routing_keys(key):
    with pytest.raises(PydanticValidationError):
        Envelope.new(key, {}, "test")


# ── InMemoryBroker ───────────────────────────────


async def test_queue_receives_facts_published_after_subscription():
    broker = InMemoryBroker()
    seen = []

    async def handler(env):
        seen.append(env.correlation_id)

    await broker.publish(topics.ORDER_CREATED, _envelope(correlation_id="before"))
    await broker.subscribe("q", [topics.ORDER_CREATED], handler)
    await broker.publish(topics.ORDER_CREATED, _envelope(correlation_id="after"))
    await broker.publish(topics.ORDER_CANCELLED, _envelope(topics.ORDER_CANCELLED))

    assert await broker.drain() == 1
    assert seen == ["after"]


async def test_publish_rejects_mismatched_routing_key():
    broker = InMemoryBroker()
    with pytest.raises(ValueError):
        await broker.publish(topics.ORDER_CANCELLED, _envelope(topics.ORDER_CREATED))


async def test_failed_handler_is_redelivered_once_then_dead_lettered():
    broker = InMemoryBroker(max_deliveries=2)
    attempts = []

    async def handler(env):
        attempts.append(env.correlation_id)
        raise RuntimeError("boom")

    await broker.subscribe("q", [topics.ORDER_CREATED], handler)
    await broker.publish(topics.ORDER_CREATED, _envelope(correlation_id="poison"))
    await broker.drain()

    assert attempts == ["poison", "poison"]
    assert len(broker.dead_letters) == 1
    letter = broker.dead_letters[0]
    assert letter.queue == "q"
    assert letter.attempts == 2
    assert letter.envelope.correlation_id == "poison"
    assert broker.pending() == 0


async def test_handler_that_recovers_on_redelivery_is_not_dead_lettered():
    broker = InMemoryBroker(max_deliveries=2)
    calls = []

    async def handler(env):
        calls.append(env.correlation_id)
        if len(calls) == 1:
            raise RuntimeError("transient")

    await broker.subscribe("q", [topics.ORDER_CREATED], handler)
    await broker.publish(topics.ORDER_CREATED, _envelope())
    await broker.drain()

    assert len(calls) == 2
    assert broker.dead_letters == []


async def test_each_queue_gets_its_own_copy():
    broker = InMemoryBroker()
    a, b = [], []

    async def handler_a(env):
        a.append(env.routing_key)

    async def handler_b(env):
        b.append(env.routing_key)

    await broker.subscribe("a", [topics.ORDER_CREATED, topics.ORDER_CANCELLED], handler_a)
    await broker.subscribe("b", [topics.ORDER_CANCELLED], handler_b)
    await broker.publish(topics.ORDER_CREATED, _envelope())
    await broker.publish(topics.ORDER_CANCELLED, _envelope(topics.ORDER_CANCELLED))
    await broker.drain()

    assert a == [topics.ORDER_CREATED, topics.ORDER_CANCELLED]
    assert b == [topics.ORDER_CANCELLED]


# ── Retry / Circuit Breaker ──────────────────────


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_circuit_opens_after_threshold_and_half_opens_after_timeout():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=10, clock=clock)

    breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert breaker.allow() is False

    clock.now = 10
    assert breaker.allow() is True
    assert breaker.state is CircuitState.HALF_OPEN

    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN

    clock.now = 25
    assert breaker.allow() is True
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED


async def test_retry_backs_off_exponentially_up_to_the_cap():
    delays = []

    async def sleep(delay):
        delays.append(delay)

    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        if calls < 4:
            raise BrokerUnavailableError("down")
        return "ok"

    result = await retry_with_backoff(
        operation, attempts=5, base_delay=1.0, max_delay=3.0, sleep=sleep
    )
    assert result == "ok"
    assert delays == [1.0, 2.0, 3.0]


async def test_retry_gives_up_after_bounded_attempts():
    async def sleep(delay):
        pass

    async def operation():
        raise BrokerUnavailableError("down")

    with pytest.raises(BrokerUnavailableError):
        await retry_with_backoff(operation, attempts=3, sleep=sleep)


class FlakyBroker(InMemoryBroker):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    async def publish(self, routing_key, envelope):
        if self.failures > 0:
            self.failures -= 1
            raise BrokerUnavailableError("broker down")
        await super().publish(routing_key, envelope)


async def _no_sleep(delay):
    pass


async def test_resilient_publisher_retries_transient_failures():
    broker = FlakyBroker(failures=2)
    publisher = ResilientPublisher(broker, attempts=3, sleep=_no_sleep)

    await publisher.publish(_envelope())

    assert broker.published_keys() == [topics.ORDER_CREATED]
    assert publisher.breaker.state is CircuitState.CLOSED


async def test_resilient_publisher_fails_fast_when_circuit_is_open():
    broker = FlakyBroker(failures=100)
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60)
    publisher = ResilientPublisher(broker, breaker, attempts=2, sleep=_no_sleep)

    with pytest.raises(BrokerUnavailableError):
        await publisher.publish(_envelope())
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await publisher.publish(_envelope())


# ── Outbox / Inbox ───────────────────────────────


@pytest.fixture
async def common_db(make_db):
    from sqlalchemy import MetaData

    return await make_db("common", MetaData())


async def _append(session_factory, aggregate_id, version, key=topics.ORDER_CREATED):
    async with session_factory() as session:
        event_id = await event_store.append_event(
            session, aggregate_id, "Order", key, {"order_id": aggregate_id}, version
        )
        await session.commit()
    return event_id


async def test_outbox_publishes_committed_events_in_order(common_db):
    broker = InMemoryBroker()
    relay = OutboxRelay(common_db, ResilientPublisher(broker, sleep=_no_sleep), "order-service")
    first = await _append(common_db, "o-1", 1)
    second = await _append(common_db, "o-1", 2, topics.ORDER_CANCELLED)

    assert await relay.flush() == 2
    assert [e.correlation_id for e in broker.published] == [first, second]
    assert broker.published[0].source_service == "order-service"
    assert await relay.flush() == 0


async def test_outbox_keeps_rows_when_broker_is_down(common_db):
    broker = FlakyBroker(failures=2)
    relay = OutboxRelay(
        common_db, ResilientPublisher(broker, attempts=2, sleep=_no_sleep), "order-service"
    )
    event_id = await _append(common_db, "o-1", 1)

    assert await relay.flush() == 0
    assert broker.published == []

    assert await relay.flush() == 1
    assert broker.published[0].correlation_id == event_id


async def test_event_store_rejects_duplicate_versions(common_db):
    from sqlalchemy.exc import IntegrityError

    await _append(common_db, "o-1", 1)
    with pytest.raises(IntegrityError):
        await _append(common_db, "o-1", 1)


async def test_inbox_claims_each_correlation_id_once(common_db):
    async with common_db() as session:
        assert await inbox.claim(session, "q", "c-1") is True
        await session.commit()
    async with common_db() as session:
        assert await inbox.claim(session, "q", "c-1") is False
        assert await inbox.claim(session, "other-q", "c-1") is True
        await session.commit()


async def test_inbox_claim_rolls_back_with_the_handler(common_db):
    async with common_db() as session:
        assert await inbox.claim(session, "q", "c-1") is True
        await session.rollback()
    async with common_db() as session:
        assert await inbox.claim(session, "q", "c-1") is True
        await session.commit()


async def test_inbox_purge_drops_entries_past_retention(common_db):
    async with common_db() as session:
        await inbox.claim(session, "q", "c-1")
        await session.commit()
    async with common_db() as session:
        removed = await inbox.purge(session, datetime.now(timezone.utc) + timedelta(seconds=1))
    assert removed == 1


async def test_outbox_flushes_are_serialized(common_db):
    broker = InMemoryBroker()
    relay = OutboxRelay(common_db, ResilientPublisher(broker, sleep=_no_sleep), "order-service")
    for version in range(1, 4):
        await _append(common_db, "o-1", version)

    counts = await asyncio.gather(relay.flush(), relay.flush())

    assert sorted(counts) == [0, 3]
    assert len(broker.published) == 3


def test_common_tables_are_shared_by_every_service():
    assert {"event_store", "processed_messages"} <= set(common_metadata.tables)
