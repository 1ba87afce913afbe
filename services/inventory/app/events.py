"""
Inventory Service — イベント定義
"""

from datetime import datetime

from pydantic import BaseModel


class InventoryLow(BaseModel):
    """引き当て後の在庫が閾値以下になった"""
    product_id: str
    quantity: int
    low_stock_threshold: int
    timestamp: datetime


class InventoryInsufficient(BaseModel):
    """在庫不足で注文を引き当てられなかった（注文キャンセルの理由になる）"""
    order_id: str
    product_id: str
    quantity_requested: int
    quantity_available: int
    timestamp: datetime
