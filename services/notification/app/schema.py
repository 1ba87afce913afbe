"""
Notification Service — テーブル定義

notifications は受信者ごとの通知ログ。
配信チャネル (メール・SMS・プッシュ) はここでは扱わない。
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, MetaData, String, Table, Text

metadata = MetaData()

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("title", String(200), nullable=False),
    Column("message", Text, nullable=False),
    # order / payment / promotion / system / review
    Column("type", String(16), nullable=False),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("data", JSON, nullable=True),
    Column("source_event", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_notifications_user_created", "user_id", "created_at"),
)
