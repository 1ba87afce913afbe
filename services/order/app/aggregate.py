"""
Order Service — 注文集約 (Order Aggregate)

ステータスは自由な文字列ではなく閉じた Enum で表し、
遷移の可否は下の遷移表を引くだけで決まる。

状態遷移:
    Pending          → Pending Payment  (オンライン決済)
    Pending          → Confirmed        (代金引換 cod)
    Pending Payment  → Confirmed        (payment.completed)
    Pending Payment  → Cancelled        (payment.failed / タイムアウト = 補償)
    Confirmed → Processing → Shipped → Out for Delivery → Delivered  (運用者操作)
    {Pending, Pending Payment, Confirmed, Processing} → Cancelled
    Delivered        → Refunded         (返金アクションのみ)

金額は注文作成時に一度だけ計算し、以後は再計算しない:
    total_amount = subtotal - discount + tax + shipping_cost
"""

import random
import string
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from services.common.errors import (
    IllegalTransitionError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidLineItemError,
    InvalidPaymentMethodError,
)

TAX_RATE = Decimal("0.18")
FREE_SHIPPING_THRESHOLD = Decimal("500")
FLAT_SHIPPING_COST = Decimal("50")
CENT = Decimal("0.01")


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PENDING_PAYMENT = "Pending Payment"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class PaymentMethod(str, Enum):
    COD = "cod"
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"

    @property
    def is_online(self) -> bool:
        return self is not PaymentMethod.COD


S = OrderStatus

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING: frozenset({S.PENDING_PAYMENT, S.CONFIRMED, S.CANCELLED}),
    S.PENDING_PAYMENT: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.OUT_FOR_DELIVERY}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset({S.REFUNDED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

# 運用者が PUT /orders/{id}/status で進められる遷移 (前進のみ)
OPERATOR_TRANSITIONS: dict[OrderStatus, OrderStatus] = {
    S.CONFIRMED: S.PROCESSING,
    S.PROCESSING: S.SHIPPED,
    S.SHIPPED: S.OUT_FOR_DELIVERY,
    S.OUT_FOR_DELIVERY: S.DELIVERED,
}

CANCELLABLE = frozenset({S.PENDING, S.PENDING_PAYMENT, S.CONFIRMED, S.PROCESSING})
TERMINAL = frozenset({S.CANCELLED, S.REFUNDED})

# ステータスごとの到達時刻カラム
STATUS_TIMESTAMPS: dict[OrderStatus, str] = {
    S.PENDING_PAYMENT: "pending_payment_at",
    S.CONFIRMED: "confirmed_at",
    S.PROCESSING: "processing_at",
    S.SHIPPED: "shipped_at",
    S.OUT_FOR_DELIVERY: "out_for_delivery_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
    S.REFUNDED: "refunded_at",
}


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    if new not in TRANSITIONS[current]:
        raise IllegalTransitionError(f"Order cannot move from {current.value} to {new.value}")


def parse_payment_method(value: str) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise InvalidPaymentMethodError(f"Unsupported payment method: {value}") from None


# ── 住所スナップショット ─────────────────────────


class Address(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    full_name: str = Field(min_length=1)
    phone: str = Field(min_length=5)
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str | None = None
    postal_code: str | None = None
    country: str = "India"


def freeze_address(data: Any) -> dict:
    if not isinstance(data, dict):
        raise InvalidAddressError("Address is required")
    try:
        return Address.model_validate(data).model_dump()
    except PydanticValidationError as exc:
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
        raise InvalidAddressError(f"Malformed address: {fields}") from None


# ── 明細と金額 ───────────────────────────────────


@dataclass(frozen=True)
class LineItem:
    product_id: str
    product_name: str
    vendor_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    discount: Decimal
    total_amount: Decimal


def to_money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Not a monetary amount: {value!r}") from None


def freeze_line_items(items: list[dict]) -> list[LineItem]:
    """カート明細の単価をこの時点の値で凍結する。"""
    frozen = []
    for raw in items:
        try:
            product_id = str(raw["product_id"])
            quantity = int(raw["quantity"])
            unit_price = to_money(raw.get("unit_price", raw.get("price")))
        except (KeyError, TypeError, ValueError, InvalidAmountError):
            raise InvalidLineItemError(f"Malformed cart item: {raw!r}") from None
        if quantity < 1 or unit_price < 0:
            raise InvalidLineItemError(f"Invalid quantity or price for {product_id}")
        frozen.append(
            LineItem(
                product_id=product_id,
                product_name=str(raw.get("product_name") or raw.get("name") or product_id),
                vendor_id=str(raw.get("vendor_id") or "unknown"),
                quantity=quantity,
                unit_price=unit_price,
            )
        )
    return frozen


def compute_totals(items: list[LineItem], discount: Decimal = Decimal("0")) -> Totals:
    subtotal = sum((item.subtotal for item in items), Decimal("0")).quantize(CENT)
    discount = to_money(discount)
    if discount < 0 or discount > subtotal:
        raise InvalidAmountError("Discount must be between 0 and the subtotal")
    shipping = Decimal("0") if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING_COST
    # 税は小計の 18% を整数に丸める
    tax = (subtotal * TAX_RATE).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    total = subtotal - discount + tax + shipping
    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping.quantize(CENT),
        tax=tax.quantize(CENT),
        discount=discount,
        total_amount=total.quantize(CENT),
    )


def new_order_number() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"ECO-{int(time.time() * 1000)}-{suffix}"
