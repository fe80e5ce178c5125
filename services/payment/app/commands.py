"""
Payment Service - コマンドハンドラ (CQRS Write 側)

決済(process)と返金(refund)。外部の決済ゲートウェイは持たず、
支払いは同期的に PROCESSING → COMPLETED まで進める。

冪等性は呼び出し単位ではなく注文 ID 単位:
有効な支払いがある注文への 2 回目の process は DuplicatePayment。
返金しても在庫は戻さない。解放は Order Service が補償として行う。
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, queries
from .aggregate import Payment
from .errors import ConcurrencyConflict, DuplicatePayment, NotFound, PaymentDeclined
from .events import PaymentFailed, PaymentProcessed, PaymentRefunded
from .schema import payments

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = frozenset(
    m.strip().upper()
    for m in os.environ.get(
        "PAYMENT_METHODS", "CREDIT_CARD,DEBIT_CARD,PAYPAL,BANK_TRANSFER"
    ).split(",")
    if m.strip()
)


async def process_payment(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    user_id: str,
    amount: Decimal,
    currency: str,
    method: str,
) -> dict:
    """
    決済コマンド

    1. 注文に有効な支払いがあれば DuplicatePayment
    2. transaction_id を採番して PROCESSING で登録
    3. 対応している決済手段なら COMPLETED、そうでなければ FAILED
    """
    existing = await queries.find_active_payment(session, order_id)
    if existing:
        await session.rollback()
        logger.warning(
            "Duplicate payment for order %s (existing=%s)", order_id, existing.id
        )
        raise DuplicatePayment(order_id, existing.id)

    now = datetime.now(timezone.utc)
    payment = Payment.create(order_id, user_id, amount, currency, method, now)

    try:
        await session.execute(
            insert(payments).values(
                id=payment.id,
                order_id=payment.order_id,
                user_id=payment.user_id,
                amount=payment.amount,
                currency=payment.currency,
                method=payment.method,
                status=payment.status,
                transaction_id=payment.transaction_id,
                version=payment.version,
                created_at=now,
                updated_at=now,
            )
        )
    except IntegrityError as e:
        # 同じ注文への同時リクエストが部分ユニークインデックスで弾かれた
        await session.rollback()
        raise DuplicatePayment(order_id) from e

    if method.upper() in SUPPORTED_METHODS:
        payment.complete(datetime.now(timezone.utc))
        event_type = "PaymentProcessed"
        event = PaymentProcessed(
            payment_id=payment.id,
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            method=method,
            transaction_id=payment.transaction_id,
            timestamp=payment.updated_at,
        )
    else:
        payment.fail(f"unsupported payment method: {method}", datetime.now(timezone.utc))
        event_type = "PaymentFailed"
        event = PaymentFailed(
            payment_id=payment.id,
            order_id=order_id,
            reason=payment.failure_reason,
            timestamp=payment.updated_at,
        )

    await _compare_and_swap(session, payment)
    await event_store.append_event(
        session,
        payment.id,
        "Payment",
        event_type,
        event.model_dump(mode="json"),
        payment.version - 1,
    )
    await session.commit()
    await _publish(redis, event_type, event.model_dump(mode="json"))

    if payment.status == "FAILED":
        logger.warning("Payment %s for order %s declined", payment.id, order_id)
        raise PaymentDeclined(payment.id, payment.failure_reason)

    logger.info(
        "Payment %s completed for order %s: %s %s (txn=%s)",
        payment.id,
        order_id,
        amount,
        currency,
        payment.transaction_id,
    )
    return queries.to_dict(payment)


async def refund_payment(
    session: AsyncSession,
    redis: aioredis.Redis,
    payment_id: str,
) -> dict:
    """
    返金コマンド

    COMPLETED 以外からは InvalidState。2 回目の返金も InvalidState になる。
    """
    payment = await queries.load_payment(session, payment_id)
    if not payment:
        await session.rollback()
        raise NotFound(payment_id)

    payment.refund(datetime.now(timezone.utc))
    await _compare_and_swap(session, payment)

    event = PaymentRefunded(
        payment_id=payment.id,
        order_id=payment.order_id,
        amount=payment.amount,
        transaction_id=payment.transaction_id,
        timestamp=payment.updated_at,
    )
    await event_store.append_event(
        session,
        payment.id,
        "Payment",
        "PaymentRefunded",
        event.model_dump(mode="json"),
        payment.version - 1,
    )
    await session.commit()
    await _publish(redis, "PaymentRefunded", event.model_dump(mode="json"))

    logger.info("Payment %s refunded (order=%s)", payment.id, payment.order_id)
    return queries.to_dict(payment)


async def _compare_and_swap(session: AsyncSession, payment: Payment) -> None:
    expected = payment.version
    result = await session.execute(
        update(payments)
        .where(payments.c.id == payment.id, payments.c.version == expected)
        .values(
            status=payment.status,
            failure_reason=payment.failure_reason,
            version=expected + 1,
            updated_at=payment.updated_at,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConcurrencyConflict(f"Payment {payment.id} changed since version {expected}")
    payment.version = expected + 1


async def _publish(redis: aioredis.Redis, event_type: str, data: dict) -> None:
    try:
        await redis.publish(
            "payment_events",
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
