"""
Inventory Service - コマンドハンドラ (CQRS Write 側)

在庫の引き当て(Reserve)と解放(Release)、入荷と棚卸し調整を処理する。
Saga パターンで重要: 注文の後続ステップが失敗すると、補償トランザクション
として release が呼ばれる。release は何度呼ばれても安全でなければならない。

同一商品への同時書き込みは楽観ロック(compare-and-swap)で直列化する:
  1. レコードを version 付きで読む
  2. メモリ上で不変条件をチェックして更新
  3. UPDATE ... WHERE version = :読んだ version
  4. 0 行なら他の書き込みに負けたので、ロールバックして 1 からやり直す
"""

import json
import logging
import os
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from . import event_store, queries
from .aggregate import InventoryRecord
from .errors import ConcurrencyConflict, DuplicateProduct, InsufficientStock, NotFound
from .events import (
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    OnHandAdjusted,
    StockAdded,
)
from .schema import inventory_holds, inventory_read_model

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = int(os.environ.get("RESERVE_MAX_ATTEMPTS", "5"))

retry_on_conflict = retry(
    retry=retry_if_exception_type(ConcurrencyConflict),
    stop=stop_after_attempt(MAX_ATTEMPTS),
    wait=wait_random(min=0, max=0.05),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


async def add_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    on_hand: int,
    warehouse: str | None = None,
) -> dict:
    """入荷コマンド。商品ごとに最初の 1 回だけ。"""
    now = datetime.now(timezone.utc)
    record = InventoryRecord.stock(product_id, on_hand, warehouse, now)

    try:
        await session.execute(
            insert(inventory_read_model).values(
                product_id=record.product_id,
                on_hand=record.on_hand,
                reserved=record.reserved,
                warehouse=record.warehouse,
                version=record.version,
                created_at=now,
                updated_at=now,
            )
        )
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateProduct(product_id) from e

    event = StockAdded(
        product_id=product_id, on_hand=on_hand, warehouse=warehouse, timestamp=now
    )
    await _record(session, record, "StockAdded", event.model_dump(mode="json"))
    await session.commit()
    await _publish(redis, "StockAdded", event.model_dump(mode="json"))

    logger.info("Stocked %s: on_hand=%d", product_id, on_hand)
    return queries.to_dict(record)


@retry_on_conflict
async def reserve_inventory(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    quantity: int,
    order_id: UUID | None = None,
) -> dict:
    """
    在庫引き当てコマンド

    1. レコードを読んで available を確認
    2. 十分なら reserved += quantity を compare-and-swap で書き込む
    3. 不足なら InsufficientStock (レコードは一切変更しない)
    """
    record = await _load(session, product_id)
    now = datetime.now(timezone.utc)

    try:
        record.reserve(quantity)
    except InsufficientStock as e:
        await session.rollback()
        logger.warning(
            "Reservation rejected for %s: requested=%d available=%d order=%s",
            product_id,
            e.requested,
            e.available,
            order_id,
        )
        failed = InventoryReservationFailed(
            product_id=product_id,
            order_id=order_id,
            quantity_requested=e.requested,
            quantity_available=e.available,
            timestamp=now,
        )
        await _publish(redis, "InventoryReservationFailed", failed.model_dump(mode="json"))
        raise

    await _compare_and_swap(session, record, now)
    if order_id is not None:
        held = await queries.load_hold(session, str(order_id), product_id)
        await _set_hold(session, str(order_id), product_id, held + quantity, now)

    event = InventoryReserved(
        product_id=product_id,
        order_id=order_id,
        quantity=quantity,
        reserved=record.reserved,
        timestamp=now,
    )
    await _record(session, record, "InventoryReserved", event.model_dump(mode="json"))
    await session.commit()
    await _publish(redis, "InventoryReserved", event.model_dump(mode="json"))

    logger.info(
        "Reserved %d of %s (order=%s): reserved=%d available=%d",
        quantity,
        product_id,
        order_id,
        record.reserved,
        record.available,
    )
    return queries.to_dict(record)


@retry_on_conflict
async def release_inventory(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    quantity: int,
    order_id: UUID | None = None,
) -> dict:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    order_id があれば、その注文が保持している数までしか解放しない。
    order_id がなければ、どの注文も保持していない分までしか解放しない。
    これで注文ごとの保持数の合計が reserved を超えることはない。
    解放する数が 0 なら何も書き込まずに現在のレコードを返す(冪等)。
    """
    record = await _load(session, product_id)
    now = datetime.now(timezone.utc)

    held = None
    if order_id is not None:
        held = await queries.load_hold(session, str(order_id), product_id)
        quantity = min(quantity, held)
    else:
        held_total = await queries.load_total_holds(session, product_id)
        quantity = min(quantity, max(0, record.reserved - held_total))

    released = record.release(quantity)
    if released == 0:
        await session.rollback()
        logger.info("Nothing to release for %s (order=%s)", product_id, order_id)
        return queries.to_dict(record)

    await _compare_and_swap(session, record, now)
    if held is not None:
        await _set_hold(session, str(order_id), product_id, held - released, now)

    event = InventoryReleased(
        product_id=product_id,
        order_id=order_id,
        quantity=released,
        reserved=record.reserved,
        timestamp=now,
    )
    await _record(session, record, "InventoryReleased", event.model_dump(mode="json"))
    await session.commit()
    await _publish(redis, "InventoryReleased", event.model_dump(mode="json"))

    logger.info(
        "Released %d of %s (order=%s): reserved=%d",
        released,
        product_id,
        order_id,
        record.reserved,
    )
    return queries.to_dict(record)


@retry_on_conflict
async def adjust_on_hand(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    new_quantity: int,
) -> dict:
    """棚卸し調整コマンド（管理用）。reserved は変えない。"""
    record = await _load(session, product_id)
    now = datetime.now(timezone.utc)

    previous = record.on_hand
    record.adjust_on_hand(new_quantity)

    await _compare_and_swap(session, record, now)
    event = OnHandAdjusted(
        product_id=product_id, previous=previous, on_hand=new_quantity, timestamp=now
    )
    await _record(session, record, "OnHandAdjusted", event.model_dump(mode="json"))
    await session.commit()
    await _publish(redis, "OnHandAdjusted", event.model_dump(mode="json"))

    logger.info("Adjusted on_hand of %s: %d -> %d", product_id, previous, new_quantity)
    return queries.to_dict(record)


# ── 内部ヘルパー ─────────────────────────────────


async def _load(session: AsyncSession, product_id: str) -> InventoryRecord:
    record = await queries.load_record(session, product_id)
    if not record:
        await session.rollback()
        raise NotFound(product_id)
    return record


async def _compare_and_swap(
    session: AsyncSession, record: InventoryRecord, now: datetime
) -> None:
    """読んだ時点の version が変わっていなければ書き込み、version を進める。"""
    expected = record.version
    result = await session.execute(
        update(inventory_read_model)
        .where(
            inventory_read_model.c.product_id == record.product_id,
            inventory_read_model.c.version == expected,
        )
        .values(
            on_hand=record.on_hand,
            reserved=record.reserved,
            version=expected + 1,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConcurrencyConflict(
            f"Inventory {record.product_id} changed since version {expected}"
        )
    record.version = expected + 1
    record.updated_at = now


async def _set_hold(
    session: AsyncSession, order_id: str, product_id: str, quantity: int, now: datetime
) -> None:
    result = await session.execute(
        update(inventory_holds)
        .where(
            inventory_holds.c.order_id == order_id,
            inventory_holds.c.product_id == product_id,
        )
        .values(quantity=quantity, updated_at=now)
    )
    if result.rowcount == 0:
        await session.execute(
            insert(inventory_holds).values(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                updated_at=now,
            )
        )


async def _record(
    session: AsyncSession, record: InventoryRecord, event_type: str, event_data: dict
) -> None:
    # イベントの version = レコードの新しい version
    await event_store.append_event(
        session,
        record.product_id,
        "Inventory",
        event_type,
        event_data,
        record.version - 1,
    )


async def _publish(redis: aioredis.Redis, event_type: str, data: dict) -> None:
    """Redis Pub/Sub への通知。コミット後なので失敗してもログだけ残す。"""
    try:
        await redis.publish(
            "inventory_events",
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
