"""
テスト共通のフィクスチャ

各サービスはテストごとに独立した SQLite ファイル DB を持ち、
InMemoryBroker を共有する。FastAPI アプリは httpx.ASGITransport 経由で呼ぶ
(lifespan は走らないので、購読の登録はフィクスチャで行う)。
"""

from dataclasses import dataclass, field
import httpx
import pytest

from services.common.broker import InMemoryBroker
from services.common.runtime import ServiceRuntime, create_session_factory
from services.common.schema import init_schema
from services.inventory.app import main as inventory_main
from services.inventory.app import subscriber as inventory_subscriber
from services.notification.app import main as notification_main
from services.notification.app import subscriber as notification_subscriber
from services.order.app import main as order_main
from services.order.app import subscriber as order_subscriber
from services.payment.app import main as payment_main
from services.payment.app.gateway import FakeGateway
from services.saga.app import main as saga_main
from services.saga.app.clients import Collaborators, OrderServiceClient, PaymentServiceClient
from tests.helpers import settings_for


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker(max_deliveries=2)


@pytest.fixture
async def make_db(tmp_path):
    engines = []

    async def make(name, metadata):
        engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / name}.db")
        await init_schema(engine, metadata)
        engines.append(engine)
        return factory

    yield make
    for engine in engines:
        await engine.dispose()


@dataclass
class Service:
    app: object
    runtime: ServiceRuntime
    client: httpx.AsyncClient

    @property
    def session_factory(self):
        return self.runtime.session_factory

    @property
    def outbox(self):
        return self.runtime.outbox


def _client(app, name: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=f"http://{name}")


@pytest.fixture
async def order_service(make_db, broker):
    from services.order.app.schema import metadata

    factory = await make_db("order", metadata)
    app = order_main.create_app(settings_for("order-service"), session_factory=factory, broker=broker)
    runtime = app.state.runtime
    await order_subscriber.register(broker, factory, runtime.outbox)
    async with _client(app, "order") as client:
        yield Service(app, runtime, client)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def payment_service(make_db, broker, gateway):
    from services.payment.app.schema import metadata

    factory = await make_db("payment", metadata)
    app = payment_main.create_app(
        settings_for("payment-service"), session_factory=factory, broker=broker, gateway=gateway
    )
    async with _client(app, "payment") as client:
        yield Service(app, app.state.runtime, client)


@pytest.fixture
async def inventory_service(make_db, broker):
    from services.inventory.app.schema import metadata

    factory = await make_db("inventory", metadata)
    app = inventory_main.create_app(
        settings_for("inventory-service"), session_factory=factory, broker=broker
    )
    runtime = app.state.runtime
    await inventory_subscriber.register(broker, factory, runtime.outbox)
    async with _client(app, "inventory") as client:
        yield Service(app, runtime, client)


@pytest.fixture
async def notification_service(make_db, broker):
    from services.notification.app.schema import metadata

    factory = await make_db("notification", metadata)
    app = notification_main.create_app(
        settings_for("notification-service"), session_factory=factory, broker=broker
    )
    await notification_subscriber.register(broker, factory)
    async with _client(app, "notification") as client:
        yield Service(app, app.state.runtime, client)


# ── 外部サービスの偽物 ───────────────────────────


@dataclass
class FakeCart:
    carts: dict[str, list[dict]] = field(default_factory=dict)
    cleared: list[str] = field(default_factory=list)

    async def get_snapshot(self, customer_id: str) -> list[dict]:
        return [dict(item) for item in self.carts.get(customer_id, [])]

    async def clear(self, customer_id: str) -> None:
        self.carts.pop(customer_id, None)
        self.cleared.append(customer_id)


@dataclass
class FakeReceipts:
    issued: list[tuple[str, str]] = field(default_factory=list)

    async def create(self, payment_id: str, order_id: str) -> str:
        self.issued.append((payment_id, order_id))
        return f"rcpt_{len(self.issued)}"


@pytest.fixture
def cart() -> FakeCart:
    return FakeCart()


@pytest.fixture
def receipts() -> FakeReceipts:
    return FakeReceipts()


@dataclass
class Marketplace:
    broker: InMemoryBroker
    orders: Service
    payments: Service
    inventory: Service
    notifications: Service
    saga: Service
    cart: FakeCart
    receipts: FakeReceipts
    gateway: FakeGateway

    @property
    def orchestrator(self):
        return self.saga.app.state.orchestrator

    async def stock(self, product_id: str, quantity: int, threshold: int = 2) -> None:
        resp = await self.inventory.client.put(
            f"/inventory/{product_id}",
            json={"quantity": quantity, "low_stock_threshold": threshold},
        )
        assert resp.status_code == 200

    async def quantity(self, product_id: str) -> int:
        resp = await self.inventory.client.get(f"/inventory/{product_id}")
        return resp.json()["quantity"]

    async def order(self, order_id: str) -> dict:
        return (await self.orders.client.get(f"/orders/{order_id}")).json()


@pytest.fixture
async def marketplace(
    make_db,
    broker,
    gateway,
    cart,
    receipts,
    order_service,
    payment_service,
    inventory_service,
    notification_service,
):
    from services.saga.app import subscriber as saga_subscriber
    from services.saga.app.schema import metadata

    collaborators = Collaborators(
        orders=OrderServiceClient(order_service.client),
        payments=PaymentServiceClient(payment_service.client),
        cart=cart,
        receipts=receipts,
    )
    factory = await make_db("saga", metadata)
    app = saga_main.create_app(
        settings_for("saga-service"),
        session_factory=factory,
        broker=broker,
        collaborators=collaborators,
        confirm_timeout=2.0,
    )
    await saga_subscriber.register(broker, factory, app.state.orchestrator)
    async with _client(app, "saga") as client:
        yield Marketplace(
            broker=broker,
            orders=order_service,
            payments=payment_service,
            inventory=inventory_service,
            notifications=notification_service,
            saga=Service(app, app.state.runtime, client),
            cart=cart,
            receipts=receipts,
            gateway=gateway,
        )
