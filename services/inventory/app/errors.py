"""
Inventory Service - エラー定義

main.py の例外ハンドラが status_code と code を使って HTTP レスポンスに変換する。
"""


class InventoryError(Exception):
    status_code = 400
    code = "INVENTORY_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(InventoryError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Inventory record not found: {product_id}")
        self.product_id = product_id


class InsufficientStock(InventoryError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
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


class DuplicateProduct(InventoryError):
    status_code = 409
    code = "DUPLICATE_PRODUCT"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Inventory record already exists: {product_id}")
        self.product_id = product_id


class ConcurrencyConflict(InventoryError):
    """compare-and-swap が他の書き込みに負けた。リトライ対象。"""

    status_code = 409
    code = "CONCURRENCY_CONFLICT"


class ValidationError(InventoryError):
    status_code = 422
    code = "VALIDATION_ERROR"
