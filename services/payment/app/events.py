"""
Payment Service — イベント定義

Order Ledger が消費するのは PaymentCompleted と PaymentFailed だけ。
残りは在庫サービスや通知サービス向けの事実。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class PaymentInitiated(BaseModel):
    payment_id: str
    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    method: str
    timestamp: datetime


class PaymentCompleted(BaseModel):
    """決済が完了した"""
    order_id: str
    payment_id: str
    user_id: str
    amount: Decimal
    transaction_id: str | None
    timestamp: datetime


class PaymentFailed(BaseModel):
    """決済が失敗した（注文キャンセル・在庫戻しの起点）"""
    order_id: str
    payment_id: str
    user_id: str
    reason: str
    timestamp: datetime


class PaymentRefunded(BaseModel):
    order_id: str
    payment_id: str
    user_id: str
    refund_amount: Decimal
    reason: str
    timestamp: datetime


class PaymentCancelled(BaseModel):
    order_id: str
    payment_id: str
    user_id: str
    reason: str
    timestamp: datetime
