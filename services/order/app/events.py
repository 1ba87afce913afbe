"""
Order Service — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
ペイロードはそのままブローカーに流れるので、
他サービスが必要とする情報 (明細など) をここに含める。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderLine(BaseModel):
    product_id: str
    vendor_id: str
    quantity: int
    unit_price: Decimal


class OrderCreated(BaseModel):
    """注文が作成された（価格・住所はこの時点で凍結）"""
    order_id: str
    order_number: str
    customer_id: str
    payment_method: str
    items: list[OrderLine]
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    discount: Decimal
    total_amount: Decimal
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: str
    customer_id: str
    from_status: str
    to_status: str
    actor: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（在庫の戻し = 補償トランザクションの起点）"""
    order_id: str
    customer_id: str
    previous_status: str
    reason: str
    items: list[OrderLine]
    timestamp: datetime


class OrderRefundRequired(BaseModel):
    """支払い済みの注文がキャンセル済みだった → 手動返金が必要"""
    order_id: str
    customer_id: str
    payment_id: str | None
    amount: Decimal | None
    reason: str
    timestamp: datetime
