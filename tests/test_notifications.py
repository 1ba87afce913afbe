from services.common import topics
from services.common.envelope import Envelope
from tests.helpers import ADDRESS, line


async def _publish(broker, key, payload, correlation_id=None):
    await broker.publish(key, Envelope.new(key, payload, "test", correlation_id))


async def _titles(service, user_id):
    resp = await service.client.get(f"/notifications/{user_id}")
    return [n["title"] for n in resp.json()]


# ── 事実からの投影 ───────────────────────────────


async def test_payment_fact_is_projected_once(broker, notification_service):
    payload = {"order_id": "o-1", "payment_id": "p-1", "user_id": "cust-1", "amount": "286.00"}
    await _publish(broker, topics.PAYMENT_COMPLETED, payload, "payment:p-1:2")
    await _publish(broker, topics.PAYMENT_COMPLETED, payload, "payment:p-1:2")
    await broker.drain()

    notes = (await notification_service.client.get("/notifications/cust-1")).json()
    assert len(notes) == 1
    assert notes[0]["title"] == "Payment successful"
    assert notes[0]["type"] == "payment"
    assert notes[0]["source_event"] == topics.PAYMENT_COMPLETED
    assert "286.00" in notes[0]["message"]


async def test_low_stock_goes_to_operations(broker, notification_service):
    await _publish(
        broker,
        topics.INVENTORY_LOW,
        {"product_id": "p1", "quantity": 1, "low_stock_threshold": 5},
    )
    await broker.drain()

    assert await _titles(notification_service, "operations") == ["Low stock"]


async def test_checkout_flow_notifies_customer(marketplace):
    m = marketplace
    await m.stock("p1", 10)
    m.cart.carts["cust-1"] = [line("p1", 1)]
    await m.saga.client.post(
        "/checkout",
        json={"customer_id": "cust-1", "shipping_address": ADDRESS, "payment_method": "card"},
    )
    await m.broker.drain()

    titles = await _titles(m.notifications, "cust-1")
    assert "Order placed" in titles
    assert "Payment successful" in titles
    assert "Order Confirmed" in titles
    assert m.broker.dead_letters == []


# ── 直接送信と既読管理 ───────────────────────────


async def test_send_and_read_lifecycle(notification_service):
    client = notification_service.client
    first = await client.post(
        "/notifications/send",
        json={"user_id": "cust-1", "title": "Sale", "message": "20% off", "type": "promotion"},
    )
    assert first.status_code == 201
    await client.post(
        "/notifications/send", json={"user_id": "cust-1", "title": "Hi", "message": "Welcome"}
    )

    count = (await client.get("/notifications/cust-1/unread-count")).json()
    assert count == {"user_id": "cust-1", "unread": 2}

    resp = await client.put(f"/notifications/{first.json()['id']}/read")
    assert resp.status_code == 200
    unread = (await client.get("/notifications/cust-1", params={"unread_only": True})).json()
    assert [n["title"] for n in unread] == ["Hi"]

    resp = await client.put("/notifications/cust-1/read-all")
    assert resp.json() == {"success": True, "updated": 1}
    count = (await client.get("/notifications/cust-1/unread-count")).json()
    assert count["unread"] == 0

    resp = await client.delete(f"/notifications/{first.json()['id']}")
    assert resp.status_code == 200
    assert await _titles(notification_service, "cust-1") == ["Hi"]


async def test_unknown_type_is_rejected(notification_service):
    resp = await notification_service.client.post(
        "/notifications/send",
        json={"user_id": "cust-1", "title": "x", "message": "y", "type": "sms"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


async def test_missing_notification_is_404(notification_service):
    client = notification_service.client
    assert (await client.put("/notifications/nope/read")).status_code == 404
    assert (await client.delete("/notifications/nope")).status_code == 404


async def test_pagination(notification_service):
    client = notification_service.client
    for i in range(3):
        await client.post(
            "/notifications/send", json={"user_id": "cust-9", "title": f"n{i}", "message": "m"}
        )
    page = (await client.get("/notifications/cust-9", params={"page": 2, "limit": 2})).json()
    assert len(page) == 1
