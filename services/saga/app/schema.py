"""
Saga Orchestrator — テーブル定義

checkouts はチェックアウト 1 回ごとの Saga ログ。
途中で落ちても、どこまで進んだかを後から確認できる。
"""

from sqlalchemy import JSON, Column, DateTime, MetaData, String, Table, Text

metadata = MetaData()

checkouts = Table(
    "checkouts",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("order_id", String(64), nullable=True, index=True),
    Column("payment_id", String(64), nullable=True),
    Column("receipt_id", String(64), nullable=True),
    Column("status", String(32), nullable=False),
    Column("reason", Text, nullable=True),
    Column("saga_log", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
