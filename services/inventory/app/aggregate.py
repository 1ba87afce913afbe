"""
Inventory Service — 在庫集約 (Inventory Aggregate)

在庫数は商品ごとの 1 行で持ち、減算は条件付き更新
(quantity >= :q のときだけ) で行う。足りなければ拒否し、0 に丸めることはしない。

注文ごとの引き当て (reserve) と戻し (release) は stock_movements に記録し、
(order_id, product_id, kind) の UNIQUE 制約で二重計上を防ぐ。
"""

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum

from services.common.errors import InvalidLineItemError

DEFAULT_LOW_STOCK_THRESHOLD = 10


class MovementKind(str, Enum):
    RESERVE = "reserve"
    RELEASE = "release"
    ADJUST = "adjust"


class ReservationState(str, Enum):
    """注文ごとの引き当て状態"""

    PENDING = "pending"
    RESERVED = "reserved"
    INSUFFICIENT = "insufficient"
    RELEASED = "released"


@dataclass(frozen=True)
class StockLine:
    product_id: str
    quantity: int


def merge_lines(items: list[dict]) -> list[StockLine]:
    """
    同じ商品の明細をまとめ、product_id 順に並べる。
    常に同じ順序で行をロックするので、注文同士でデッドロックしない。
    """
    totals: dict[str, int] = OrderedDict()
    for item in items:
        try:
            product_id = str(item["product_id"])
            quantity = int(item["quantity"])
        except (KeyError, TypeError, ValueError):
            raise InvalidLineItemError(f"Malformed order line: {item!r}") from None
        if quantity < 1:
            raise InvalidLineItemError(f"Invalid quantity for {product_id}: {quantity}")
        totals[product_id] = totals.get(product_id, 0) + quantity
    return [StockLine(product_id, quantity) for product_id, quantity in sorted(totals.items())]


def is_low(quantity: int, threshold: int) -> bool:
    return quantity <= threshold
