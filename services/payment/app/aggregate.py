"""
Payment Service — 決済集約 (Payment Aggregate)

状態遷移:
    initiated  → processing  (confirm でゲートウェイに問い合わせ中)
    processing → completed | failed
    completed  → refunded
    initiated / processing → cancelled

completed は一度しか起こらない。payment.completed も決済ごとに最大 1 回。
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import uuid4

from services.common.errors import (
    IllegalTransitionError,
    InvalidAmountError,
    InvalidPaymentMethodError,
)

CURRENCY = "INR"
CENT = Decimal("0.01")


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


P = PaymentStatus

TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    P.INITIATED: frozenset({P.PROCESSING, P.CANCELLED}),
    P.PROCESSING: frozenset({P.COMPLETED, P.FAILED, P.CANCELLED}),
    P.COMPLETED: frozenset({P.REFUNDED}),
    P.FAILED: frozenset(),
    P.REFUNDED: frozenset(),
    P.CANCELLED: frozenset(),
}

# ゲートウェイの結果が確定した状態
FINALIZED = frozenset({P.COMPLETED, P.FAILED, P.REFUNDED})

# 代金引換 (cod) は決済サービスを通らない
ONLINE_METHODS = frozenset({"card", "upi", "netbanking", "wallet"})


def check_transition(current: PaymentStatus, new: PaymentStatus) -> None:
    if new not in TRANSITIONS[current]:
        raise IllegalTransitionError(f"Payment cannot move from {current.value} to {new.value}")


def parse_method(value: str) -> str:
    if value == "cod":
        raise InvalidPaymentMethodError("Cash on delivery orders are not paid online")
    if value not in ONLINE_METHODS:
        raise InvalidPaymentMethodError(f"Unsupported payment method: {value}")
    return value


def to_money(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Not a monetary amount: {value!r}") from None
    if not amount.is_finite():
        raise InvalidAmountError(f"Not a monetary amount: {value!r}")
    return amount


def new_payment_id() -> str:
    return f"pay_{uuid4().hex}"
