"""
Notification Service — 事実の購読

order.* / payment.* / inventory.low を一つのキューで購読し、通知ログに投影する。
通知の記録に失敗しても台帳側は待たない (購読は台帳の処理と切り離されている)。
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common import inbox, topics
from services.common.broker import BrokerClient
from services.common.envelope import Envelope

from . import projections

logger = logging.getLogger(__name__)

QUEUE = "notification-service.facts"

ROUTING_KEYS = [
    topics.ORDER_CREATED,
    topics.ORDER_STATUS_CHANGED,
    topics.ORDER_CANCELLED,
    topics.ORDER_REFUND_REQUIRED,
    topics.PAYMENT_COMPLETED,
    topics.PAYMENT_FAILED,
    topics.PAYMENT_REFUNDED,
    topics.PAYMENT_CANCELLED,
    topics.INVENTORY_LOW,
]


def make_handler(session_factory: async_sessionmaker):
    async def handle(envelope: Envelope) -> None:
        async with session_factory() as session:
            if not await inbox.claim(session, QUEUE, envelope.correlation_id):
                return
            notification_id = await projections.handle_fact(session, envelope)
            await session.commit()
        logger.info("Projected %s -> %s", envelope.routing_key, notification_id)

    return handle


async def register(broker: BrokerClient, session_factory: async_sessionmaker) -> None:
    await broker.subscribe(QUEUE, ROUTING_KEYS, make_handler(session_factory))
