"""
Order Service - イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class OrderLineData(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderCreated(BaseModel):
    """注文が作成された（PENDING）"""
    order_id: UUID
    user_id: str
    lines: list[OrderLineData]
    total_amount: Decimal
    currency: str
    shipping_address: str
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """注文が確定された（在庫引き当てと決済が成功）"""
    order_id: UUID
    payment_id: str | None = None
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """オペレーターがステータスを進めた（PROCESSING, SHIPPED, DELIVERED）"""
    order_id: UUID
    previous: str
    status: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（Saga の補償、またはオペレーター操作）"""
    order_id: UUID
    previous: str
    reason: str
    timestamp: datetime


class OrderStalePending(BaseModel):
    """PENDING のまま一定時間を過ぎた注文が見つかった（リコンサイル用の通知）"""
    order_id: UUID
    created_at: datetime
    timestamp: datetime
