"""
Inventory Service - イベント定義

在庫ドメインで発生するイベント。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class StockAdded(BaseModel):
    """商品が初めて入荷された"""
    product_id: str
    on_hand: int
    warehouse: str | None = None
    timestamp: datetime


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: str
    order_id: UUID | None = None
    quantity: int
    reserved: int
    timestamp: datetime


class InventoryReservationFailed(BaseModel):
    """在庫引き当てが失敗した（在庫不足）。レコードは変わらないのでストアには残さない。"""
    product_id: str
    order_id: UUID | None = None
    quantity_requested: int
    quantity_available: int
    timestamp: datetime


class InventoryReleased(BaseModel):
    """在庫の引き当てが解放された（補償トランザクション）"""
    product_id: str
    order_id: UUID | None = None
    quantity: int
    reserved: int
    timestamp: datetime


class OnHandAdjusted(BaseModel):
    """棚卸しで実在庫数が調整された"""
    product_id: str
    previous: int
    on_hand: int
    timestamp: datetime
