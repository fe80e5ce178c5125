"""
Order Service - コマンドハンドラ (CQRS の Write 側)

CQRS パターンでは、書き込み(Command)と読み取り(Query)を分離する。
コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同時にリードモデル(Read Model)も更新する。

注文作成は Saga として実行する (saga.py):
  PENDING で保存 → 明細ごとに在庫引き当て → 決済 → CONFIRMED
  途中で失敗したら補償(引き当て解放・返金)して CANCELLED にする。
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, queries
from .aggregate import (
    CANCELLED,
    CONFIRMED,
    PENDING,
    STATUSES,
    OrderAggregate,
    build_lines,
    total_of,
)
from .clients import InventoryClient, PaymentClient
from .errors import NotFound, OrderError, ValidationError
from .events import (
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderLineData,
    OrderStalePending,
    OrderStatusChanged,
)
from .saga import Saga, SagaFailed
from .schema import order_lines, orders_read_model

logger = logging.getLogger(__name__)


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    inventory: InventoryClient,
    payments: PaymentClient,
    user_id: str,
    items: list[dict],
    shipping_address: str,
    currency: str = "USD",
    payment_method: str = "CREDIT_CARD",
) -> dict:
    """
    注文作成コマンド

    1. 明細を検証して小計・合計を計算（副作用の前）
    2. PENDING でイベントストアとリードモデルに保存
    3. Saga: 在庫引き当て → 決済 → 確定
    4. Saga が失敗したら CANCELLED にして、元のエラーを返す
    """
    lines = build_lines(items)
    if not shipping_address:
        raise ValidationError("shipping_address is required")

    order_id = uuid4()
    now = datetime.now(timezone.utc)
    event = OrderCreated(
        order_id=order_id,
        user_id=user_id,
        lines=[OrderLineData(**line.to_dict()) for line in lines],
        total_amount=total_of(lines),
        currency=currency,
        shipping_address=shipping_address,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")

    # 1. イベントストアに追記
    version = await event_store.append_event(
        session, order_id, "Order", "OrderCreated", event_data, 0
    )

    # 2. リードモデルを更新
    await session.execute(
        insert(orders_read_model).values(
            id=str(order_id),
            user_id=user_id,
            status=PENDING,
            total_amount=event.total_amount,
            currency=currency,
            shipping_address=shipping_address,
            version=version,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        insert(order_lines),
        [
            {
                "order_id": str(order_id),
                "line_no": line_no,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "subtotal": line.subtotal,
            }
            for line_no, line in enumerate(lines, start=1)
        ],
    )
    await session.commit()
    await _publish(redis, "OrderCreated", event_data)
    logger.info(
        "Order %s created for user %s: %d lines, total %s %s",
        order_id,
        user_id,
        len(lines),
        event.total_amount,
        currency,
    )

    # 3. Saga を組み立てて実行
    saga = Saga("PlaceOrder", order_id, redis)
    for line in lines:
        saga.add_step(
            f"ReserveInventory {line.product_id}",
            partial(inventory.reserve, line.product_id, line.quantity, order_id),
            partial(_release_line, inventory, line.product_id, line.quantity, order_id),
        )
    saga.add_step(
        "ProcessPayment",
        partial(
            payments.process,
            order_id,
            user_id,
            event.total_amount,
            currency,
            payment_method,
        ),
        partial(_refund_payment, payments, order_id),
    )
    saga.add_step(
        "ConfirmOrder",
        lambda: _confirm(session, redis, order_id, saga.results["ProcessPayment"]["id"]),
    )

    try:
        await saga.execute()
    except SagaFailed as e:
        # 4. 補償済み。注文を CANCELLED にして元のエラーを返す
        await session.rollback()
        try:
            await _mark_cancelled(
                session, redis, order_id, f"{e.step} failed: {e.error}"
            )
        except OrderError:
            await session.rollback()
            logger.exception(
                "Could not cancel order %s after %s failed; needs reconciliation",
                order_id,
                e.step,
            )
        if isinstance(e.error, OrderError):
            e.error.order_id = str(order_id)
        raise e.error

    return await queries.get_order(session, order_id)


async def update_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    inventory: InventoryClient,
    payments: PaymentClient,
    order_id: UUID,
    new_status: str,
) -> dict:
    """
    ステータス更新コマンド（オペレーター操作）

    状態遷移表にない遷移は InvalidTransition。
    CANCELLED への遷移は cancel_order と同じ扱い(引き当て解放を伴う)。
    ただし既に CANCELLED の注文は遷移表にないので InvalidTransition。
    """
    if new_status not in STATUSES:
        raise ValidationError(f"unknown status: {new_status}")

    agg = await _load(session, order_id)
    agg.ensure_transition(new_status)
    if new_status == CANCELLED:
        return await cancel_order(
            session, redis, inventory, payments, order_id, "Cancelled by status update"
        )

    now = datetime.now(timezone.utc)
    event = OrderStatusChanged(
        order_id=order_id, previous=agg.status, status=new_status, timestamp=now
    )
    event_data = event.model_dump(mode="json")
    version = await event_store.append_event(
        session, order_id, "Order", "OrderStatusChanged", event_data, agg.version
    )
    await _update_read_model(
        session, order_id, status=new_status, version=version, updated_at=now
    )
    await session.commit()
    await _publish(redis, "OrderStatusChanged", event_data)

    logger.info("Order %s: %s -> %s", order_id, agg.status, new_status)
    return await queries.get_order(session, order_id)


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    inventory: InventoryClient,
    payments: PaymentClient,
    order_id: UUID,
    reason: str = "Cancelled by operator",
) -> dict:
    """
    注文キャンセルコマンド

    終端でない状態からならいつでも可能。
    CANCELLED を保存してから明細ごとに引き当てを解放し、決済済みなら返金する。
    既に CANCELLED なら状態は変えず、引き当ての解放だけを再発行する
    (注文単位の解放なので、解放済みなら何も起きない)。
    解放・返金の失敗は呼び出し元には返さず、リコンサイル用にログへ残す。
    """
    agg = await _load(session, order_id)
    already_cancelled = agg.status == CANCELLED
    if already_cancelled:
        await session.rollback()
        logger.info("Order %s is already cancelled; reissuing releases", order_id)
    else:
        agg = await _mark_cancelled(session, redis, order_id, reason, agg)

    for line in agg.lines:
        try:
            await inventory.release(line.product_id, line.quantity, order_id)
        except OrderError:
            logger.exception(
                "Release of %s x%d for cancelled order %s failed; needs reconciliation",
                line.product_id,
                line.quantity,
                order_id,
            )
    if agg.payment_id and not already_cancelled:
        try:
            await payments.refund(agg.payment_id)
        except OrderError:
            logger.exception(
                "Refund of payment %s for cancelled order %s failed; needs reconciliation",
                agg.payment_id,
                order_id,
            )

    return await queries.get_order(session, order_id)


async def flag_stale_orders(
    session: AsyncSession,
    redis: aioredis.Redis,
    older_than: timedelta,
) -> list[str]:
    """
    PENDING のまま older_than を過ぎた注文にフラグを立てる。

    引き当てと決済の間でプロセスが落ちると、在庫が引き当てられたまま
    注文が PENDING で残る。ここでは検出と通知だけを行い、解放はしない。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(orders_read_model.c.id, orders_read_model.c.created_at).where(
            orders_read_model.c.status == PENDING,
            orders_read_model.c.created_at < now - older_than,
            orders_read_model.c.stale_flagged_at.is_(None),
        )
    )
    stale = result.fetchall()
    if not stale:
        return []

    await session.execute(
        update(orders_read_model)
        .where(
            orders_read_model.c.id.in_([row.id for row in stale]),
            orders_read_model.c.stale_flagged_at.is_(None),
        )
        .values(stale_flagged_at=now)
    )
    await session.commit()

    for row in stale:
        logger.warning(
            "Order %s has been PENDING since %s; flagged for reconciliation",
            row.id,
            row.created_at,
        )
        event = OrderStalePending(
            order_id=row.id, created_at=row.created_at, timestamp=now
        )
        await _publish(redis, "OrderStalePending", event.model_dump(mode="json"))
    return [row.id for row in stale]


# ── Saga のステップ ──────────────────────────────


async def _release_line(
    inventory: InventoryClient,
    product_id: str,
    quantity: int,
    order_id: UUID,
    _reservation: dict | None = None,
) -> None:
    await inventory.release(product_id, quantity, order_id)


async def _refund_payment(
    payments: PaymentClient, order_id: UUID, payment: dict | None = None
) -> None:
    # 決済が ambiguous に失敗した場合は結果がないので、注文 ID から探す
    if payment is None:
        payment = await payments.get_by_order(order_id)
        if payment is None or payment["status"] != "COMPLETED":
            return
    await payments.refund(payment["id"])


async def _confirm(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
    payment_id: str,
) -> OrderAggregate:
    """注文確定（Saga の最終ステップ）"""
    agg = await _load(session, order_id)
    agg.ensure_transition(CONFIRMED)

    now = datetime.now(timezone.utc)
    event = OrderConfirmed(order_id=order_id, payment_id=payment_id, timestamp=now)
    event_data = event.model_dump(mode="json")
    version = await event_store.append_event(
        session, order_id, "Order", "OrderConfirmed", event_data, agg.version
    )
    await _update_read_model(
        session,
        order_id,
        status=CONFIRMED,
        payment_id=payment_id,
        version=version,
        updated_at=now,
    )
    await session.commit()
    await _publish(redis, "OrderConfirmed", event_data)

    agg.apply_order_confirmed(event_data)
    agg.version = version
    logger.info("Order %s confirmed (payment %s)", order_id, payment_id)
    return agg


# ── 内部ヘルパー ─────────────────────────────────


async def _load(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    """現在の集約をイベントから再構築する。"""
    events = await event_store.load_events(session, order_id)
    if not events:
        raise NotFound(order_id)
    return OrderAggregate.from_events(events)


async def _mark_cancelled(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
    reason: str,
    agg: OrderAggregate | None = None,
) -> OrderAggregate:
    if agg is None:
        agg = await _load(session, order_id)
    if agg.status == CANCELLED:
        return agg
    agg.ensure_transition(CANCELLED)

    now = datetime.now(timezone.utc)
    event = OrderCancelled(
        order_id=order_id, previous=agg.status, reason=reason, timestamp=now
    )
    event_data = event.model_dump(mode="json")
    version = await event_store.append_event(
        session, order_id, "Order", "OrderCancelled", event_data, agg.version
    )
    await _update_read_model(
        session,
        order_id,
        status=CANCELLED,
        cancel_reason=reason,
        version=version,
        updated_at=now,
    )
    await session.commit()
    await _publish(redis, "OrderCancelled", event_data)

    logger.info("Order %s cancelled from %s: %s", order_id, agg.status, reason)
    agg.apply_order_cancelled(event_data)
    agg.version = version
    return agg


async def _update_read_model(session: AsyncSession, order_id: UUID, **values) -> None:
    await session.execute(
        update(orders_read_model)
        .where(orders_read_model.c.id == str(order_id))
        .values(**values)
    )


async def _publish(redis: aioredis.Redis, event_type: str, data: dict) -> None:
    """
    Redis Pub/Sub でイベントを発行する（通知サービスが購読する）。
    通知はベストエフォート。失敗しても注文はロールバックしない。
    """
    try:
        await redis.publish(
            "order_events",
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
