"""
Payment Service - イベント定義
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class PaymentProcessed(BaseModel):
    """決済が完了した"""
    payment_id: str
    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    method: str
    transaction_id: str
    timestamp: datetime


class PaymentFailed(BaseModel):
    """決済が拒否された"""
    payment_id: str
    order_id: str
    reason: str
    timestamp: datetime


class PaymentRefunded(BaseModel):
    """返金された（在庫の解放は Order Service の責務）"""
    payment_id: str
    order_id: str
    amount: Decimal
    transaction_id: str
    timestamp: datetime
