"""
Payment Service — テーブル定義

order_id は UNIQUE。1 つの注文に対する決済は 1 件だけで、
initiate の冪等性はこの制約で保証する。
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Text, Table

metadata = MetaData()

payments = Table(
    "payments",
    metadata,
    Column("id", String(48), primary_key=True),
    Column("order_id", String(64), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("method", String(16), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("gateway_payment_id", String(64), nullable=False, unique=True),
    Column("transaction_id", String(64), nullable=True),
    Column("card_last4", String(4), nullable=True),
    Column("upi_id", String(64), nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("refund_amount", Numeric(12, 2), nullable=True),
    Column("refund_reason", Text, nullable=True),
    Column("gateway_refund_id", String(64), nullable=True),
    Column("refunded_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
