"""
Inventory Service - 台帳のテスト

reserve / release / adjust が 0 <= reserved <= on_hand を崩さないこと、
注文単位の解放が冪等であること、競合時に compare-and-swap がやり直すことを確認する。
"""

import random
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from services.inventory.app import commands, event_store, queries
from services.inventory.app.aggregate import InventoryRecord
from services.inventory.app.errors import (
    DuplicateProduct,
    InsufficientStock,
    NotFound,
    ValidationError,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ── InventoryRecord ──────────────────────────────


def test_reserve_reduces_available():
    record = InventoryRecord.stock("p1", 10, None, NOW)
    record.reserve(4)
    assert (record.on_hand, record.reserved, record.available) == (10, 4, 6)


def test_reserve_beyond_available_leaves_record_unchanged():
    record = InventoryRecord("p1", on_hand=10, reserved=8)
    with pytest.raises(InsufficientStock) as exc:
        record.reserve(3)
    assert exc.value.requested == 3
    assert exc.value.available == 2
    assert record.reserved == 8


def test_reserve_rejects_non_positive_quantity():
    record = InventoryRecord("p1", on_hand=10)
    with pytest.raises(ValidationError):
        record.reserve(0)


def test_release_clamps_at_zero():
    record = InventoryRecord("p1", on_hand=10, reserved=2)
    assert record.release(5) == 2
    assert record.reserved == 0
    assert record.release(5) == 0


def test_adjust_on_hand_keeps_reserved():
    record = InventoryRecord("p1", on_hand=10, reserved=4)
    record.adjust_on_hand(20)
    assert (record.on_hand, record.reserved) == (20, 4)
    with pytest.raises(ValidationError):
        record.adjust_on_hand(3)
    with pytest.raises(ValidationError):
        record.adjust_on_hand(-1)


def test_random_operations_keep_ledger_invariant():
    rng = random.Random(42)
    record = InventoryRecord("p1", on_hand=50)
    for _ in range(500):
        op = rng.choice(["reserve", "release", "adjust"])
        qty = rng.randint(1, 20)
        try:
            if op == "reserve":
                record.reserve(qty)
            elif op == "release":
                record.release(qty)
            else:
                record.adjust_on_hand(record.reserved + qty)
        except (InsufficientStock, ValidationError):
            pass
        assert 0 <= record.reserved <= record.on_hand


# ── コマンド ──────────────────────────────────────


@pytest.mark.asyncio
async def test_add_stock_twice_is_duplicate(inventory_db, redis):
    async with inventory_db() as session:
        created = await commands.add_stock(session, redis, "p1", 10, "tokyo")
    assert created["available"] == 10
    assert created["version"] == 1

    async with inventory_db() as session:
        with pytest.raises(DuplicateProduct):
            await commands.add_stock(session, redis, "p1", 5)


@pytest.mark.asyncio
async def test_reserve_and_release_update_the_record(inventory_db, redis):
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 10)
        reserved = await commands.reserve_inventory(session, redis, "p1", 3)
        released = await commands.release_inventory(session, redis, "p1", 1)

    assert reserved["reserved"] == 3
    assert released["reserved"] == 2
    assert released["available"] == 8
    assert released["version"] == 3

    async with inventory_db() as session:
        events = await event_store.load_events(session, "p1")
    assert [e["event_type"] for e in events] == [
        "StockAdded",
        "InventoryReserved",
        "InventoryReleased",
    ]
    assert [e["version"] for e in events] == [1, 2, 3]


@pytest.mark.asyncio
async def test_insufficient_stock_does_not_modify_record(inventory_db, redis):
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 2)
    async with inventory_db() as session:
        with pytest.raises(InsufficientStock):
            await commands.reserve_inventory(session, redis, "p1", 3, uuid4())

    async with inventory_db() as session:
        product = await queries.get_product(session, "p1")
        events = await event_store.load_events(session, "p1")
    assert product["reserved"] == 0
    assert product["version"] == 1
    assert len(events) == 1
    published = [call.args[1] for call in redis.publish.await_args_list]
    assert any("InventoryReservationFailed" in message for message in published)


@pytest.mark.asyncio
async def test_reserve_unknown_product(inventory_db, redis):
    async with inventory_db() as session:
        with pytest.raises(NotFound):
            await commands.reserve_inventory(session, redis, "missing", 1)


@pytest.mark.asyncio
async def test_order_release_only_frees_its_own_hold(inventory_db, redis):
    order_a, order_b = uuid4(), uuid4()
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 10)
        await commands.reserve_inventory(session, redis, "p1", 3, order_a)
        await commands.reserve_inventory(session, redis, "p1", 4, order_b)

        # order_a が保持しているのは 3 個だけ
        after = await commands.release_inventory(session, redis, "p1", 10, order_a)
        assert after["reserved"] == 4

        # 2 回目の解放は何もしない
        again = await commands.release_inventory(session, redis, "p1", 3, order_a)
        assert again["reserved"] == 4
        assert again["version"] == after["version"]

        assert await queries.load_hold(session, str(order_a), "p1") == 0
        assert await queries.load_hold(session, str(order_b), "p1") == 4


@pytest.mark.asyncio
async def test_adjust_on_hand_below_reserved_is_rejected(inventory_db, redis):
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 10)
        await commands.reserve_inventory(session, redis, "p1", 6)
        with pytest.raises(ValidationError):
            await commands.adjust_on_hand(session, redis, "p1", 5)
        adjusted = await commands.adjust_on_hand(session, redis, "p1", 6)
    assert (adjusted["on_hand"], adjusted["reserved"], adjusted["available"]) == (6, 6, 0)


@pytest.mark.asyncio
async def test_reserve_retries_after_concurrent_write(inventory_db, redis, monkeypatch):
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 10)
        await commands.reserve_inventory(session, redis, "p1", 2)

    real_load = queries.load_record
    calls = []

    async def stale_then_fresh(session, product_id):
        calls.append(product_id)
        if len(calls) == 1:
            # 他の書き込みより前に読んだ古いスナップショット
            return InventoryRecord("p1", on_hand=10, reserved=0, version=1)
        return await real_load(session, product_id)

    monkeypatch.setattr(queries, "load_record", stale_then_fresh)

    async with inventory_db() as session:
        result = await commands.reserve_inventory(session, redis, "p1", 3)

    assert len(calls) == 2
    assert result["reserved"] == 5
    assert result["version"] == 3


@pytest.mark.asyncio
async def test_check_availability_is_false_for_unknown_product(inventory_db, redis):
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 5)
        assert await queries.check_availability(session, "p1", 5) is True
        assert await queries.check_availability(session, "p1", 6) is False
        assert await queries.check_availability(session, "nope", 1) is False


@pytest.mark.asyncio
async def test_unscoped_release_cannot_free_held_stock(inventory_db, redis):
    order_a, order_b = uuid4(), uuid4()
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 5)
        await commands.reserve_inventory(session, redis, "p1", 5, order_a)

        # 全量が order_a の保持分なので、注文を指定しない解放では何も減らない
        after = await commands.release_inventory(session, redis, "p1", 5)
        assert after["reserved"] == 5

        with pytest.raises(InsufficientStock):
            await commands.reserve_inventory(session, redis, "p1", 5, order_b)

        await commands.release_inventory(session, redis, "p1", 5, order_a)
        await commands.reserve_inventory(session, redis, "p1", 5, order_b)

        # order_a の 2 回目の解放は order_b の引き当てに触れない
        again = await commands.release_inventory(session, redis, "p1", 5, order_a)
        assert again["reserved"] == 5
        assert await queries.load_hold(session, str(order_b), "p1") == 5


@pytest.mark.asyncio
async def test_unscoped_release_frees_only_unheld_reservations(inventory_db, redis):
    async with inventory_db() as session:
        await commands.add_stock(session, redis, "p1", 10)
        await commands.reserve_inventory(session, redis, "p1", 3, uuid4())
        await commands.reserve_inventory(session, redis, "p1", 4)

        after = await commands.release_inventory(session, redis, "p1", 10)
        assert after["reserved"] == 3
        assert await queries.load_total_holds(session, "p1") == 3
