"""
Order Service - 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from .errors import InvalidTransition, ValidationError

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
PROCESSING = "PROCESSING"
SHIPPED = "SHIPPED"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"

STATUSES = (PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED)

# 終端でない状態からは、いつでも CANCELLED に遷移できる
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({DELIVERED, CANCELLED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
}


class OrderLine:
    """注文明細。unit_price は注文時点の価格で固定。"""

    def __init__(self, product_id: str, quantity: int, unit_price: Decimal) -> None:
        if not product_id:
            raise ValidationError("product_id is required")
        if quantity <= 0:
            raise ValidationError(f"quantity must be > 0 (product {product_id})")
        unit_price = Decimal(str(unit_price))
        if unit_price < 0:
            raise ValidationError(f"unit_price must be >= 0 (product {product_id})")
        self.product_id = product_id
        self.quantity = quantity
        self.unit_price = unit_price

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "subtotal": self.subtotal,
        }


def build_lines(items: list[dict]) -> list[OrderLine]:
    """リクエストの明細を検証して OrderLine に変換する。副作用の前に呼ぶこと。"""
    if not items:
        raise ValidationError("an order needs at least one item")
    return [
        OrderLine(item["product_id"], item["quantity"], item["unit_price"])
        for item in items
    ]


def total_of(lines: list[OrderLine]) -> Decimal:
    return sum((line.subtotal for line in lines), Decimal("0"))


class OrderAggregate:
    """
    注文集約 - イベントから現在の状態を再構築する。

    状態遷移:
        PENDING    → CONFIRMED   (引き当て・決済成功)
        PENDING    → CANCELLED   (引き当て or 決済失敗 = 補償)
        CONFIRMED  → PROCESSING → SHIPPED → DELIVERED
        非終端状態 → CANCELLED   (オペレーターのキャンセル)
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.user_id: str = ""
        self.lines: list[OrderLine] = []
        self.total_amount: Decimal = Decimal("0")
        self.currency: str = "USD"
        self.shipping_address: str = ""
        self.status: str = "UNKNOWN"
        self.payment_id: str | None = None
        self.cancel_reason: str | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.version: int = 0

    def ensure_transition(self, new_status: str) -> None:
        if new_status not in TRANSITIONS.get(self.status, ()):
            raise InvalidTransition(self.status, new_status)

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = UUID(str(data["order_id"]))
        self.user_id = data["user_id"]
        self.lines = [
            OrderLine(line["product_id"], line["quantity"], line["unit_price"])
            for line in data["lines"]
        ]
        self.total_amount = Decimal(str(data["total_amount"]))
        self.currency = data["currency"]
        self.shipping_address = data["shipping_address"]
        self.status = PENDING
        self.created_at = self.updated_at = _ts(data)

    def apply_order_confirmed(self, data: dict) -> None:
        self.status = CONFIRMED
        self.payment_id = data.get("payment_id")
        self.updated_at = _ts(data)

    def apply_order_status_changed(self, data: dict) -> None:
        self.status = data["status"]
        self.updated_at = _ts(data)

    def apply_order_cancelled(self, data: dict) -> None:
        self.status = CANCELLED
        self.cancel_reason = data.get("reason")
        self.updated_at = _ts(data)

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderStatusChanged": self.apply_order_status_changed,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg


def _ts(data: dict) -> datetime | None:
    ts = data.get("timestamp")
    if isinstance(ts, str):
        return datetime.fromisoformat(ts)
    return ts
