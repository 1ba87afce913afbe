"""
Inventory Service — 注文の事実を購読する

order.created で引き当て、order.cancelled / payment.failed で戻す。
どの事実も Inbox で重複を弾いてから処理する。
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common import inbox, topics
from services.common.broker import BrokerClient
from services.common.envelope import Envelope
from services.common.outbox import OutboxRelay

from . import commands

logger = logging.getLogger(__name__)

QUEUE = "inventory-service.order-facts"


def make_handler(session_factory: async_sessionmaker, outbox: OutboxRelay):
    async def handle(envelope: Envelope) -> None:
        payload = envelope.payload
        order_id = payload["order_id"]
        async with session_factory() as session:
            if not await inbox.claim(session, QUEUE, envelope.correlation_id):
                return
            if envelope.routing_key == topics.ORDER_CREATED:
                result = await commands.reserve_for_order(
                    session, outbox, order_id, payload.get("items", [])
                )
            else:
                reason = payload.get("reason") or envelope.routing_key
                result = await commands.release_for_order(session, outbox, order_id, reason)
            await session.commit()
        logger.info("%s for order %s: %s", envelope.routing_key, order_id, result["status"])

    return handle


async def register(
    broker: BrokerClient, session_factory: async_sessionmaker, outbox: OutboxRelay
) -> None:
    await broker.subscribe(
        QUEUE,
        [topics.ORDER_CREATED, topics.ORDER_CANCELLED, topics.PAYMENT_FAILED],
        make_handler(session_factory, outbox),
    )
