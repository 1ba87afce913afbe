"""
Common — 全サービス共通のテーブル定義

マイクロサービスでは各サービスが独自のデータストアを持つ
(Database per Service パターン)。どのサービスの DB にも
以下の 2 テーブルを作る。

  event_store          追記専用のイベントログ。published_at が NULL の行は
                       まだブローカーへ送っていない (Transactional Outbox)
  processed_messages   コンシューマごとの処理済み correlation_id (Inbox)
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(64), nullable=False, unique=True),
    Column("aggregate_id", String(64), nullable=False, index=True),
    Column("aggregate_type", String(32), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("published_at", DateTime(timezone=True), nullable=True, index=True),
    # 楽観的ロック: 同じ集約の同じバージョンは 1 つだけ
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)

processed_messages = Table(
    "processed_messages",
    metadata,
    Column("consumer", String(96), primary_key=True),
    Column("correlation_id", String(128), primary_key=True),
    Column("processed_at", DateTime(timezone=True), nullable=False, index=True),
)


async def init_schema(engine: AsyncEngine, service_metadata: MetaData) -> None:
    """共通テーブルとサービス固有テーブルを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.run_sync(service_metadata.create_all)
