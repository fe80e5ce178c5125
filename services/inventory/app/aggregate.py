"""
Inventory Service - 在庫レコード (Inventory Record)

商品ごとに 1 レコード。on_hand(実在庫) と reserved(引き当て済み) を持ち、
available = on_hand - reserved で販売可能数を算出する。

不変条件: 0 <= reserved <= on_hand (available は常に 0 以上)
reserved を変えてよいのは reserve / release だけ。
"""

from datetime import datetime

from .errors import InsufficientStock, ValidationError


class InventoryRecord:
    def __init__(
        self,
        product_id: str,
        on_hand: int,
        reserved: int = 0,
        warehouse: str | None = None,
        version: int = 0,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        self.product_id = product_id
        self.on_hand = on_hand
        self.reserved = reserved
        self.warehouse = warehouse
        self.version = version
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    @classmethod
    def stock(
        cls, product_id: str, on_hand: int, warehouse: str | None, now: datetime
    ) -> "InventoryRecord":
        """新規入荷時のファクトリ。reserved は 0、version は 1 から始まる。"""
        if on_hand < 0:
            raise ValidationError("on_hand must be >= 0")
        return cls(
            product_id=product_id,
            on_hand=on_hand,
            reserved=0,
            warehouse=warehouse,
            version=1,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def from_row(cls, row) -> "InventoryRecord":
        return cls(
            product_id=row.product_id,
            on_hand=row.on_hand,
            reserved=row.reserved,
            warehouse=row.warehouse,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ── 台帳操作 ─────────────────────────────────────

    def reserve(self, quantity: int) -> None:
        """available を超える引き当ては InsufficientStock。レコードは変更しない。"""
        if quantity <= 0:
            raise ValidationError("quantity must be > 0")
        if quantity > self.available:
            raise InsufficientStock(self.product_id, quantity, self.available)
        self.reserved += quantity

    def release(self, quantity: int) -> int:
        """
        引き当てを解放する。解放しすぎても失敗せず 0 で止める。
        補償トランザクションは何度リトライされても安全でなければならない。

        実際に解放した数を返す。
        """
        if quantity < 0:
            raise ValidationError("quantity must be >= 0")
        released = min(quantity, self.reserved)
        self.reserved -= released
        return released

    def adjust_on_hand(self, new_quantity: int) -> None:
        """管理用の棚卸し調整。reserved は変更しない。"""
        if new_quantity < 0:
            raise ValidationError("on_hand must be >= 0")
        if new_quantity < self.reserved:
            raise ValidationError(
                f"on_hand {new_quantity} is below reserved {self.reserved}"
            )
        self.on_hand = new_quantity
