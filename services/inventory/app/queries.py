"""
Inventory Service - クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import InventoryRecord
from .schema import inventory_holds, inventory_read_model


def to_dict(record: InventoryRecord) -> dict:
    return {
        "product_id": record.product_id,
        "on_hand": record.on_hand,
        "reserved": record.reserved,
        "available": record.available,
        "warehouse": record.warehouse,
        "version": record.version,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


async def load_record(session: AsyncSession, product_id: str) -> InventoryRecord | None:
    result = await session.execute(
        select(inventory_read_model).where(
            inventory_read_model.c.product_id == product_id
        )
    )
    row = result.fetchone()
    if not row:
        return None
    return InventoryRecord.from_row(row)


async def load_hold(session: AsyncSession, order_id: str, product_id: str) -> int:
    """注文が保持している引き当て数。なければ 0。"""
    result = await session.execute(
        select(inventory_holds.c.quantity).where(
            inventory_holds.c.order_id == order_id,
            inventory_holds.c.product_id == product_id,
        )
    )
    return result.scalar_one_or_none() or 0


async def load_total_holds(session: AsyncSession, product_id: str) -> int:
    """全注文が保持している引き当て数の合計。"""
    result = await session.execute(
        select(func.coalesce(func.sum(inventory_holds.c.quantity), 0)).where(
            inventory_holds.c.product_id == product_id
        )
    )
    return result.scalar_one()


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    record = await load_record(session, product_id)
    if not record:
        return None
    return to_dict(record)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(inventory_read_model).order_by(inventory_read_model.c.product_id)
    )
    return [to_dict(InventoryRecord.from_row(row)) for row in result.fetchall()]


async def check_availability(
    session: AsyncSession, product_id: str, quantity: int
) -> bool:
    """
    available >= quantity かどうか。読み取り専用で、あくまで目安。
    直後の reserve が競合で失敗することはあり得る。
    """
    record = await load_record(session, product_id)
    if not record:
        return False
    return record.available >= quantity
