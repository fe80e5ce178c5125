"""
Payment Service - クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Payment
from .schema import ACTIVE_STATUSES, payments


def to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "transaction_id": payment.transaction_id,
        "failure_reason": payment.failure_reason,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }


async def load_payment(session: AsyncSession, payment_id: str) -> Payment | None:
    result = await session.execute(select(payments).where(payments.c.id == payment_id))
    row = result.fetchone()
    return Payment.from_row(row) if row else None


async def find_active_payment(session: AsyncSession, order_id: str) -> Payment | None:
    """返金・失敗していない支払い。注文ごとに高々 1 件。"""
    result = await session.execute(
        select(payments).where(
            payments.c.order_id == order_id,
            payments.c.status.in_(ACTIVE_STATUSES),
        )
    )
    row = result.fetchone()
    return Payment.from_row(row) if row else None


async def get_payment(session: AsyncSession, payment_id: str) -> dict | None:
    payment = await load_payment(session, payment_id)
    return to_dict(payment) if payment else None


async def get_payment_by_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文の支払い。有効なものがなければ最新のもの。"""
    payment = await find_active_payment(session, order_id)
    if payment:
        return to_dict(payment)
    result = await session.execute(
        select(payments)
        .where(payments.c.order_id == order_id)
        .order_by(payments.c.created_at.desc())
        .limit(1)
    )
    row = result.fetchone()
    return to_dict(Payment.from_row(row)) if row else None


async def list_payments(session: AsyncSession, user_id: str | None = None) -> list[dict]:
    stmt = select(payments).order_by(payments.c.created_at.desc())
    if user_id:
        stmt = stmt.where(payments.c.user_id == user_id)
    result = await session.execute(stmt)
    return [to_dict(Payment.from_row(row)) for row in result.fetchall()]
