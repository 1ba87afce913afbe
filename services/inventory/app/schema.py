"""
Inventory Service — テーブル定義

  inventory_items   商品ごとの在庫数 (quantity >= 0 を DB でも保証)
  stock_movements   在庫の増減履歴。注文ごとの reserve / release は一度だけ
  order_reservations  注文ごとの引き当て状態。reserve と release はこの行を
                      ロックしてから動くので、同じ注文では直列になる
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

inventory_items = Table(
    "inventory_items",
    metadata,
    Column("product_id", String(64), primary_key=True),
    Column("product_name", String(200), nullable=True),
    Column("quantity", Integer, nullable=False),
    Column("low_stock_threshold", Integer, nullable=False),
    Column("version", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
)

stock_movements = Table(
    "stock_movements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), nullable=True, index=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("kind", String(16), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "product_id", "kind", name="uq_stock_movement_once"),
)

order_reservations = Table(
    "order_reservations",
    metadata,
    Column("order_id", String(64), primary_key=True),
    Column("state", String(16), nullable=False),
    Column("reason", Text, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
