"""テストで使う定数と小さなヘルパー"""

from dataclasses import dataclass, field
from decimal import Decimal

from services.common.config import ServiceSettings

ADDRESS = {
    "full_name": "Asha Rao",
    "phone": "9876543210",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
}


def settings_for(name: str) -> ServiceSettings:
    return ServiceSettings(
        service_name=name,
        database_url="sqlite+aiosqlite://",
        publish_attempts=2,
        publish_backoff_base=0.0,
        publish_backoff_max=0.0,
    )


def line(product_id: str, quantity: int, unit_price: str = "100.00", vendor_id: str = "v1") -> dict:
    return {
        "product_id": product_id,
        "product_name": f"Product {product_id}",
        "vendor_id": vendor_id,
        "unit_price": unit_price,
        "quantity": quantity,
    }


@dataclass
class FakeCatalog:
    prices: dict[str, Decimal] = field(default_factory=dict)

    async def get_price(self, product_id: str) -> Decimal:
        return self.prices[product_id]
