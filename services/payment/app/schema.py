"""
Payment Service - テーブル定義

注文ごとに有効な(返金・失敗していない)支払いは 1 件まで。
部分ユニークインデックスで同時リクエストによる二重決済も防ぐ。
"""

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)

metadata = MetaData()

ACTIVE_STATUSES = ("PENDING", "PROCESSING", "COMPLETED")

_active = text("status IN ('PENDING', 'PROCESSING', 'COMPLETED')")

payments = Table(
    "payments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("method", String(32), nullable=False),
    Column("status", String(16), nullable=False),
    Column("transaction_id", String(36), nullable=False, unique=True),
    Column("failure_reason", Text),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index(
        "uq_payments_active_order",
        "order_id",
        unique=True,
        sqlite_where=_active,
        postgresql_where=_active,
    ),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False),
    Column("aggregate_type", String(64), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)
