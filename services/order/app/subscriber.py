"""
Order Service — 決済の事実を購読する

Order Ledger が消費する事実は payment.completed と payment.failed の 2 つだけ。
Inbox の claim を同じトランザクションの最初に行い、状態変更と一緒にコミットする。
前提条件を満たさない事実 (注文がまだ無いなど) は例外で返し、
ブローカーの再配信 → Dead Letter に任せる。
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common import inbox, topics
from services.common.broker import BrokerClient
from services.common.envelope import Envelope
from services.common.outbox import OutboxRelay

from . import commands

logger = logging.getLogger(__name__)

QUEUE = "order-service.payment-facts"


def make_handler(session_factory: async_sessionmaker, outbox: OutboxRelay):
    async def handle(envelope: Envelope) -> None:
        order_id = envelope.payload.get("order_id")
        async with session_factory() as session:
            if not await inbox.claim(session, QUEUE, envelope.correlation_id):
                return
            await commands.apply_payment_fact(
                session, outbox, order_id, envelope.routing_key, envelope.payload
            )
            # 状態が変わらなかった場合も claim だけは残す
            await session.commit()
        logger.info("Applied %s to order %s", envelope.routing_key, order_id)

    return handle


async def register(
    broker: BrokerClient, session_factory: async_sessionmaker, outbox: OutboxRelay
) -> None:
    await broker.subscribe(
        QUEUE,
        [topics.PAYMENT_COMPLETED, topics.PAYMENT_FAILED],
        make_handler(session_factory, outbox),
    )
