"""
Order Service - クエリハンドラ (CQRS の Read 側)

CQRS パターンでは、読み取りはリードモデル(Read Model)から行う。
リードモデルはイベントから投影(Projection)された非正規化データで、
クエリに最適化されている。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_lines, orders_read_model


def _to_dict(row, lines: list[dict]) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "items": lines,
        "total_amount": row.total_amount,
        "currency": row.currency,
        "shipping_address": row.shipping_address,
        "payment_id": row.payment_id,
        "cancel_reason": row.cancel_reason,
        "stale_flagged_at": row.stale_flagged_at.isoformat()
        if row.stale_flagged_at
        else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def _lines_by_order(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id.in_(order_ids))
        .order_by(order_lines.c.order_id, order_lines.c.line_no)
    )
    lines: dict[str, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        lines[row.order_id].append(
            {
                "product_id": row.product_id,
                "quantity": row.quantity,
                "unit_price": row.unit_price,
                "subtotal": row.subtotal,
            }
        )
    return lines


async def _fetch(session: AsyncSession, stmt) -> list[dict]:
    rows = (await session.execute(stmt)).fetchall()
    lines = await _lines_by_order(session, [row.id for row in rows])
    return [_to_dict(row, lines[row.id]) for row in rows]


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """リードモデルから注文を取得する。"""
    orders = await _fetch(
        session,
        select(orders_read_model).where(orders_read_model.c.id == str(order_id)),
    )
    return orders[0] if orders else None


async def list_orders(
    session: AsyncSession, user_id: str | None = None, status: str | None = None
) -> list[dict]:
    """注文一覧をリードモデルから取得する。"""
    stmt = select(orders_read_model).order_by(orders_read_model.c.created_at.desc())
    if user_id:
        stmt = stmt.where(orders_read_model.c.user_id == user_id)
    if status:
        stmt = stmt.where(orders_read_model.c.status == status)
    return await _fetch(session, stmt)


async def list_stale_orders(session: AsyncSession) -> list[dict]:
    """掃除ジョブがフラグを立てた、PENDING のまま残っている注文。"""
    return await _fetch(
        session,
        select(orders_read_model)
        .where(
            orders_read_model.c.status == "PENDING",
            orders_read_model.c.stale_flagged_at.is_not(None),
        )
        .order_by(orders_read_model.c.created_at.asc()),
    )
