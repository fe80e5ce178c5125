"""
Order Service - テーブル定義

注文の正はイベントストア。orders_read_model / order_lines は
クエリ用に投影したリードモデル。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

orders_read_model = Table(
    "orders_read_model",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("shipping_address", Text, nullable=False),
    Column("payment_id", String(36)),
    Column("cancel_reason", Text),
    # PENDING のまま放置された注文を掃除ジョブが見つけた時刻
    Column("stale_flagged_at", DateTime(timezone=True)),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("order_id", String(36), ForeignKey("orders_read_model.id"), primary_key=True),
    Column("line_no", Integer, primary_key=True),
    Column("product_id", String(36), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
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
