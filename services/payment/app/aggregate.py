"""
Payment Service - 支払い集約 (Payment Aggregate)

状態遷移:
    PENDING → PROCESSING → COMPLETED
                         → FAILED
    COMPLETED → REFUNDED  (返金は COMPLETED からのみ)

transaction_id は作成時に一度だけ採番し、以後変更しない。
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from .errors import InvalidState


class Payment:
    def __init__(
        self,
        id: str,
        order_id: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        method: str,
        status: str,
        transaction_id: str,
        failure_reason: str | None = None,
        version: int = 1,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.order_id = order_id
        self.user_id = user_id
        self.amount = amount
        self.currency = currency
        self.method = method
        self.status = status
        self.transaction_id = transaction_id
        self.failure_reason = failure_reason
        self.version = version
        self.created_at = created_at
        self.updated_at = updated_at

    @classmethod
    def create(
        cls,
        order_id: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        method: str,
        now: datetime,
    ) -> "Payment":
        """ID と transaction_id を採番し、PROCESSING で作成する。version 0 は未確定の行。"""
        return cls(
            id=str(uuid4()),
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            method=method,
            status="PROCESSING",
            transaction_id=str(uuid4()),
            version=0,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def from_row(cls, row) -> "Payment":
        return cls(
            id=row.id,
            order_id=row.order_id,
            user_id=row.user_id,
            amount=row.amount,
            currency=row.currency,
            method=row.method,
            status=row.status,
            transaction_id=row.transaction_id,
            failure_reason=row.failure_reason,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def complete(self, now: datetime) -> None:
        if self.status != "PROCESSING":
            raise InvalidState(self.id, self.status, "complete")
        self.status = "COMPLETED"
        self.updated_at = now

    def fail(self, reason: str, now: datetime) -> None:
        if self.status != "PROCESSING":
            raise InvalidState(self.id, self.status, "fail")
        self.status = "FAILED"
        self.failure_reason = reason
        self.updated_at = now

    def refund(self, now: datetime) -> None:
        if self.status != "COMPLETED":
            raise InvalidState(self.id, self.status, "refund")
        self.status = "REFUNDED"
        self.updated_at = now
