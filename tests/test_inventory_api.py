"""
Inventory Service - HTTP エンドポイントのテスト
"""

from uuid import uuid4

import pytest


@pytest.mark.asyncio
async def test_stock_reserve_and_query(inventory_api, stock):
    created = await stock("p1", 10)
    assert created["on_hand"] == 10

    resp = await inventory_api.post(
        "/commands/inventory/p1/reserve", json={"quantity": 4, "order_id": str(uuid4())}
    )
    assert resp.status_code == 200
    assert resp.json()["available"] == 6

    resp = await inventory_api.get("/queries/inventory/p1")
    assert resp.json()["reserved"] == 4

    resp = await inventory_api.get("/queries/inventory")
    assert [p["product_id"] for p in resp.json()] == ["p1"]


@pytest.mark.asyncio
async def test_duplicate_stock_is_conflict(inventory_api, stock):
    await stock("p1", 10)
    resp = await inventory_api.post(
        "/commands/inventory", json={"product_id": "p1", "on_hand": 1}
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "DUPLICATE_PRODUCT"


@pytest.mark.asyncio
async def test_insufficient_stock_response_body(inventory_api, stock):
    await stock("p1", 2)
    resp = await inventory_api.post("/commands/inventory/p1/reserve", json={"quantity": 5})
    assert resp.status_code == 409
    assert resp.json() == {
        "detail": "Insufficient stock for p1: requested=5, available=2",
        "code": "INSUFFICIENT_STOCK",
        "product_id": "p1",
        "requested": 5,
        "available": 2,
    }


@pytest.mark.asyncio
async def test_reserve_rejects_invalid_quantity(inventory_api, stock):
    await stock("p1", 2)
    resp = await inventory_api.post("/commands/inventory/p1/reserve", json={"quantity": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_unknown_product(inventory_api):
    resp = await inventory_api.post("/commands/inventory/nope/reserve", json={"quantity": 1})
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"

    resp = await inventory_api.get("/queries/inventory/nope")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_check_availability(inventory_api, stock):
    await stock("p1", 3)
    resp = await inventory_api.get("/queries/inventory/p1/check", params={"quantity": 3})
    assert resp.json() is True
    resp = await inventory_api.get("/queries/inventory/p1/check", params={"quantity": 4})
    assert resp.json() is False


@pytest.mark.asyncio
async def test_adjust_on_hand(inventory_api, stock):
    await stock("p1", 10)
    await inventory_api.post("/commands/inventory/p1/reserve", json={"quantity": 4})

    resp = await inventory_api.put("/commands/inventory/p1/on-hand", json={"on_hand": 3})
    assert resp.status_code == 422

    resp = await inventory_api.put("/commands/inventory/p1/on-hand", json={"on_hand": 7})
    assert resp.status_code == 200
    assert resp.json()["available"] == 3


@pytest.mark.asyncio
async def test_event_log_endpoints(inventory_api, stock):
    await stock("p1", 10)
    await inventory_api.post("/commands/inventory/p1/reserve", json={"quantity": 1})

    resp = await inventory_api.get("/events/p1")
    assert [e["event_type"] for e in resp.json()] == ["StockAdded", "InventoryReserved"]

    resp = await inventory_api.get("/events")
    assert all(e["aggregate_id"] == "p1" for e in resp.json())
