"""
Inventory Service - テーブル定義

Database per Service パターン: このサービス専用の DB に
リードモデル(在庫台帳)、注文ごとの引き当て(ホールド)、イベントストアを置く。
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

inventory_read_model = Table(
    "inventory_read_model",
    metadata,
    Column("product_id", String(36), primary_key=True),
    Column("on_hand", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    Column("warehouse", String(255)),
    # compare-and-swap トークン。書き込みのたびに +1 する
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand"),
    CheckConstraint("reserved >= 0 AND reserved <= on_hand", name="ck_inventory_reserved"),
)

inventory_holds = Table(
    "inventory_holds",
    metadata,
    Column("order_id", String(36), primary_key=True),
    Column("product_id", String(36), primary_key=True),
    Column("quantity", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 0", name="ck_hold_quantity"),
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
