"""
Saga Orchestrator — 在庫不足の事実を購読する

inventory.insufficient を受け取ったら注文をキャンセルし、
まだ確定していない決済があれば取り消す。
下流の呼び出しが失敗したら例外を返し、Inbox の claim もロールバックさせる。
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common import inbox, topics
from services.common.broker import BrokerClient
from services.common.envelope import Envelope

from .orchestrator import CheckoutOrchestrator

logger = logging.getLogger(__name__)

QUEUE = "saga-service.inventory-facts"


def make_handler(session_factory: async_sessionmaker, orchestrator: CheckoutOrchestrator):
    async def handle(envelope: Envelope) -> None:
        payload = envelope.payload
        async with session_factory() as session:
            if not await inbox.claim(session, QUEUE, envelope.correlation_id):
                return
            await orchestrator.cancel_for_insufficient_stock(
                payload["order_id"], payload.get("product_id", "unknown")
            )
            await session.commit()
        logger.info("Order %s cancelled for insufficient stock", payload["order_id"])

    return handle


async def register(
    broker: BrokerClient, session_factory: async_sessionmaker, orchestrator: CheckoutOrchestrator
) -> None:
    await broker.subscribe(
        QUEUE, [topics.INVENTORY_INSUFFICIENT], make_handler(session_factory, orchestrator)
    )
