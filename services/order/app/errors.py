"""
Order Service - エラー定義

下流サービス(Inventory / Payment)のエラーは clients.py がここの型に変換する。

ambiguous: 相手側で処理されたかどうか分からない失敗(タイムアウト、5xx)。
Saga はこの場合、失敗したステップ自身にも補償を実行する。
"""


class OrderError(Exception):
    status_code = 400
    code = "ORDER_ERROR"
    ambiguous = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.order_id: str | None = None

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.order_id:
            body["order_id"] = self.order_id
        return body


class NotFound(OrderError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = str(order_id)


class ValidationError(OrderError):
    status_code = 422
    code = "VALIDATION_ERROR"


class InvalidTransition(OrderError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition order from {current} to {requested}")
        self.current = current
        self.requested = requested


class ConcurrencyConflict(OrderError):
    status_code = 409
    code = "CONCURRENCY_CONFLICT"


class InsufficientStock(OrderError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int | None) -> None:
        super().__init__(
            f"Insufficient stock for {product_id}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
        }


class ProductNotFound(OrderError):
    status_code = 404
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"No inventory record for product {product_id}")
        self.product_id = product_id


class PaymentFailed(OrderError):
    """Payment Service が決済を拒否した(DUPLICATE_PAYMENT, PAYMENT_DECLINED など)"""

    status_code = 402
    code = "PAYMENT_FAILED"

    def __init__(self, reason_code: str, message: str, status_code: int = 402) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason_code": self.reason_code}


class DownstreamError(OrderError):
    """下流サービスの 4xx で、上のどれにも当てはまらないもの"""

    status_code = 502
    code = "DOWNSTREAM_ERROR"

    def __init__(self, service: str, status: int, message: str) -> None:
        super().__init__(f"{service} responded {status}: {message}")
        self.service = service
        self.downstream_status = status


class ServiceUnavailable(OrderError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    ambiguous = True

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} unavailable: {message}")
        self.service = service
