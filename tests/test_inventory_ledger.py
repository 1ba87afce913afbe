import asyncio

import pytest
from sqlalchemy import select

from services.common import topics
from services.common.envelope import Envelope
from services.common.errors import InvalidLineItemError
from services.inventory.app.aggregate import merge_lines
from services.inventory.app.schema import order_reservations
from services.inventory.app.subscriber import make_handler
from tests.helpers import line


def _order_created(order_id, *items, correlation_id=None):
    return Envelope.new(
        topics.ORDER_CREATED,
        {"order_id": order_id, "items": list(items)},
        "order-service",
        correlation_id,
    )


def _order_cancelled(order_id, correlation_id=None):
    return Envelope.new(
        topics.ORDER_CANCELLED,
        {"order_id": order_id, "reason": "customer cancelled", "items": []},
        "order-service",
        correlation_id,
    )


async def _stock(inventory_service, product_id, quantity, threshold=2):
    resp = await inventory_service.client.put(
        f"/inventory/{product_id}", json={"quantity": quantity, "low_stock_threshold": threshold}
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _quantity(inventory_service, product_id):
    return (await inventory_service.client.get(f"/inventory/{product_id}")).json()["quantity"]


def test_merge_lines_combines_duplicates_in_product_order():
    lines = merge_lines([line("b", 1), line("a", 2), line("b", 3)])
    assert [(l.product_id, l.quantity) for l in lines] == [("a", 2), ("b", 4)]


@pytest.mark.parametrize("item", [{"product_id": "a"}, {"product_id": "a", "quantity": 0}])
def test_merge_lines_rejects_bad_lines(item):
    with pytest.raises(InvalidLineItemError):
        merge_lines([item])


async def test_order_created_reserves_every_line(inventory_service, broker):
    await _stock(inventory_service, "p1", 10)
    await _stock(inventory_service, "p2", 5)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)

    await handler(_order_created("o-1", line("p1", 3), line("p2", 1)))

    assert await _quantity(inventory_service, "p1") == 7
    assert await _quantity(inventory_service, "p2") == 4
    movements = (await inventory_service.client.get("/movements", params={"order_id": "o-1"})).json()
    assert sorted((m["product_id"], m["kind"], m["quantity"]) for m in movements) == [
        ("p1", "reserve", -3),
        ("p2", "reserve", -1),
    ]


async def test_redelivered_order_created_reserves_once(inventory_service):
    await _stock(inventory_service, "p1", 10)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)
    fact = _order_created("o-1", line("p1", 3), correlation_id="evt-1")

    await handler(fact)
    await handler(fact)
    # 別の correlation_id で同じ注文が届いても二重に引き当てない
    await handler(_order_created("o-1", line("p1", 3), correlation_id="evt-2"))

    assert await _quantity(inventory_service, "p1") == 7


async def test_shortage_rejects_the_whole_order_without_clamping(inventory_service, broker):
    await _stock(inventory_service, "p1", 10)
    await _stock(inventory_service, "p2", 1)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)

    await handler(_order_created("o-1", line("p1", 3), line("p2", 2)))

    assert await _quantity(inventory_service, "p1") == 10
    assert await _quantity(inventory_service, "p2") == 1
    insufficient = [e for e in broker.published if e.routing_key == topics.INVENTORY_INSUFFICIENT]
    assert len(insufficient) == 1
    assert insufficient[0].payload == {
        "order_id": "o-1",
        "product_id": "p2",
        "quantity_requested": 2,
        "quantity_available": 1,
        "timestamp": insufficient[0].payload["timestamp"],
    }


async def test_unknown_product_is_insufficient(inventory_service, broker):
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)
    await handler(_order_created("o-1", line("ghost", 1)))
    assert broker.published_keys() == [topics.INVENTORY_INSUFFICIENT]


async def test_low_stock_is_announced(inventory_service, broker):
    await _stock(inventory_service, "p1", 5, threshold=3)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)

    await handler(_order_created("o-1", line("p1", 1)))
    assert topics.INVENTORY_LOW not in broker.published_keys()

    await handler(_order_created("o-2", line("p1", 1)))
    low = [e for e in broker.published if e.routing_key == topics.INVENTORY_LOW]
    assert len(low) == 1
    assert low[0].payload["quantity"] == 3
    assert low[0].payload["low_stock_threshold"] == 3


async def test_cancellation_credits_back_once(inventory_service):
    await _stock(inventory_service, "p1", 10)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)
    await handler(_order_created("o-1", line("p1", 4)))

    await handler(_order_cancelled("o-1"))
    await handler(_order_cancelled("o-1"))

    assert await _quantity(inventory_service, "p1") == 10
    kinds = [
        m["kind"]
        for m in (await inventory_service.client.get("/movements", params={"order_id": "o-1"})).json()
    ]
    assert sorted(kinds) == ["release", "reserve"]


async def test_payment_failed_releases_like_a_cancellation(inventory_service):
    await _stock(inventory_service, "p1", 10)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)
    await handler(_order_created("o-1", line("p1", 4)))

    await handler(
        Envelope.new(
            topics.PAYMENT_FAILED,
            {"order_id": "o-1", "payment_id": "pay_1", "reason": "Card declined"},
            "payment-service",
        )
    )

    assert await _quantity(inventory_service, "p1") == 10


async def test_cancellation_before_creation_prevents_the_reservation(inventory_service):
    await _stock(inventory_service, "p1", 10)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)

    await handler(_order_cancelled("o-1"))
    await handler(_order_created("o-1", line("p1", 4)))

    assert await _quantity(inventory_service, "p1") == 10


async def test_release_of_a_rejected_order_credits_nothing(inventory_service):
    await _stock(inventory_service, "p1", 1)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)

    await handler(_order_created("o-1", line("p1", 2)))
    await handler(_order_cancelled("o-1"))

    assert await _quantity(inventory_service, "p1") == 1


async def test_concurrent_orders_never_oversell(inventory_service, broker):
    await _stock(inventory_service, "p1", 3)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)

    await asyncio.gather(
        *(handler(_order_created(f"o-{i}", line("p1", 1))) for i in range(8))
    )

    assert await _quantity(inventory_service, "p1") == 0
    reserved = (await inventory_service.client.get("/inventory/p1/movements")).json()
    assert len([m for m in reserved if m["kind"] == "reserve"]) == 3
    assert broker.published_keys().count(topics.INVENTORY_INSUFFICIENT) == 5


@pytest.mark.parametrize("cancel_first", [False, True])
async def test_concurrent_reserve_and_release_for_one_order(inventory_service, cancel_first):
    await _stock(inventory_service, "p1", 10)
    handler = make_handler(inventory_service.session_factory, inventory_service.outbox)
    facts = [_order_created("o-1", line("p1", 4)), _order_cancelled("o-1")]
    if cancel_first:
        facts.reverse()

    await asyncio.gather(*(handler(fact) for fact in facts))

    assert await _quantity(inventory_service, "p1") == 10
    async with inventory_service.session_factory() as session:
        state = (
            await session.execute(
                select(order_reservations.c.state).where(order_reservations.c.order_id == "o-1")
            )
        ).scalar_one()
    assert state == "released"


async def test_broker_delivers_order_facts_to_the_reactor(inventory_service, broker):
    await _stock(inventory_service, "p1", 10)
    await broker.publish(topics.ORDER_CREATED, _order_created("o-1", line("p1", 2)))
    await broker.drain()
    assert await _quantity(inventory_service, "p1") == 8


# ── 運用者による在庫編集 ─────────────────────────


async def test_set_stock_upserts_and_journals(inventory_service):
    created = await _stock(inventory_service, "p1", 10)
    assert created["quantity"] == 10
    assert created["low_stock_threshold"] == 2

    updated = await _stock(inventory_service, "p1", 4)
    assert updated["quantity"] == 4
    journal = (await inventory_service.client.get("/inventory/p1/movements")).json()
    assert sorted(m["quantity"] for m in journal) == [-6, 10]


async def test_set_stock_rejects_negative_quantity(inventory_service):
    resp = await inventory_service.client.put("/inventory/p1", json={"quantity": -1})
    assert resp.status_code == 422


async def test_adjust_never_goes_below_zero(inventory_service):
    await _stock(inventory_service, "p1", 2)

    resp = await inventory_service.client.post("/inventory/p1/adjust", json={"delta": -3})
    assert resp.status_code == 409
    assert resp.json()["code"] == "insufficient_stock"
    assert await _quantity(inventory_service, "p1") == 2

    resp = await inventory_service.client.post(
        "/inventory/p1/adjust", json={"delta": 5, "reason": "restock"}
    )
    assert resp.json()["quantity"] == 7


async def test_adjust_unknown_product_is_404(inventory_service):
    resp = await inventory_service.client.post("/inventory/nope/adjust", json={"delta": 1})
    assert resp.status_code == 404


async def test_low_only_listing(inventory_service):
    await _stock(inventory_service, "p1", 1, threshold=5)
    await _stock(inventory_service, "p2", 50, threshold=5)
    low = (await inventory_service.client.get("/inventory", params={"low_only": True})).json()
    assert [item["product_id"] for item in low] == ["p1"]
