"""
Payment Service - エラー定義
"""


class PaymentError(Exception):
    status_code = 400
    code = "PAYMENT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(PaymentError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"Payment not found: {payment_id}")
        self.payment_id = payment_id


class DuplicatePayment(PaymentError):
    """同じ注文に有効な支払いが既にある（注文 ID 単位の冪等性ガード）"""

    status_code = 409
    code = "DUPLICATE_PAYMENT"

    def __init__(self, order_id: str, payment_id: str | None = None) -> None:
        super().__init__(f"Order {order_id} already has an active payment")
        self.order_id = order_id
        self.payment_id = payment_id

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "order_id": self.order_id,
            "payment_id": self.payment_id,
        }


class InvalidState(PaymentError):
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, payment_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} payment {payment_id} in status {status}")
        self.payment_id = payment_id
        self.status = status


class PaymentDeclined(PaymentError):
    status_code = 402
    code = "PAYMENT_DECLINED"

    def __init__(self, payment_id: str, reason: str) -> None:
        super().__init__(f"Payment {payment_id} declined: {reason}")
        self.payment_id = payment_id
        self.reason = reason

    def to_dict(self) -> dict:
        return {**super().to_dict(), "payment_id": self.payment_id}


class ConcurrencyConflict(PaymentError):
    status_code = 409
    code = "CONCURRENCY_CONFLICT"
