"""
Payment Service - 決済と返金のテスト
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from services.payment.app import commands, event_store, queries
from services.payment.app.errors import (
    DuplicatePayment,
    InvalidState,
    NotFound,
    PaymentDeclined,
)


async def _pay(session, redis, order_id, method="CREDIT_CARD"):
    return await commands.process_payment(
        session, redis, order_id, "user-1", Decimal("90.00"), "USD", method
    )


@pytest.mark.asyncio
async def test_process_completes_payment(payment_db, redis):
    order_id = str(uuid4())
    async with payment_db() as session:
        payment = await _pay(session, redis, order_id)

    assert payment["status"] == "COMPLETED"
    assert payment["order_id"] == order_id
    assert payment["amount"] == Decimal("90.00")
    assert payment["transaction_id"]

    async with payment_db() as session:
        events = await event_store.load_events(session, payment["id"])
    assert [(e["event_type"], e["version"]) for e in events] == [("PaymentProcessed", 1)]


@pytest.mark.asyncio
async def test_second_payment_for_same_order_is_duplicate(payment_db, redis):
    order_id = str(uuid4())
    async with payment_db() as session:
        first = await _pay(session, redis, order_id)
    async with payment_db() as session:
        with pytest.raises(DuplicatePayment) as exc:
            await _pay(session, redis, order_id)
    assert exc.value.payment_id == first["id"]

    async with payment_db() as session:
        payments = await queries.list_payments(session)
    assert len(payments) == 1


@pytest.mark.asyncio
async def test_refund_twice_is_invalid_state(payment_db, redis):
    async with payment_db() as session:
        payment = await _pay(session, redis, str(uuid4()))
    async with payment_db() as session:
        refunded = await commands.refund_payment(session, redis, payment["id"])
    assert refunded["status"] == "REFUNDED"
    assert refunded["transaction_id"] == payment["transaction_id"]

    async with payment_db() as session:
        with pytest.raises(InvalidState):
            await commands.refund_payment(session, redis, payment["id"])


@pytest.mark.asyncio
async def test_refund_unknown_payment(payment_db, redis):
    async with payment_db() as session:
        with pytest.raises(NotFound):
            await commands.refund_payment(session, redis, str(uuid4()))


@pytest.mark.asyncio
async def test_unsupported_method_is_recorded_as_failed(payment_db, redis):
    order_id = str(uuid4())
    async with payment_db() as session:
        with pytest.raises(PaymentDeclined):
            await _pay(session, redis, order_id, method="BARTER")

    async with payment_db() as session:
        failed = await queries.get_payment_by_order(session, order_id)
    assert failed["status"] == "FAILED"
    assert "BARTER" in failed["failure_reason"]

    # 失敗した支払いは有効ではないので、別の手段でやり直せる
    async with payment_db() as session:
        retried = await _pay(session, redis, order_id)
    assert retried["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_new_payment_allowed_after_refund(payment_db, redis):
    order_id = str(uuid4())
    async with payment_db() as session:
        first = await _pay(session, redis, order_id)
        await commands.refund_payment(session, redis, first["id"])
        second = await _pay(session, redis, order_id)
    assert second["id"] != first["id"]
    assert second["transaction_id"] != first["transaction_id"]


# ── HTTP ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_payment_endpoints(payment_api):
    order_id = str(uuid4())
    body = {"order_id": order_id, "user_id": "user-1", "amount": "45.50"}

    resp = await payment_api.post("/commands/payments/process", json=body)
    assert resp.status_code == 201
    payment = resp.json()

    resp = await payment_api.post("/commands/payments/process", json=body)
    assert resp.status_code == 409
    assert resp.json()["code"] == "DUPLICATE_PAYMENT"

    resp = await payment_api.get(f"/queries/payments/order/{order_id}")
    assert resp.json()["id"] == payment["id"]

    resp = await payment_api.get("/queries/payments", params={"user_id": "user-1"})
    assert len(resp.json()) == 1

    resp = await payment_api.post(f"/commands/payments/{payment['id']}/refund")
    assert resp.json()["status"] == "REFUNDED"

    resp = await payment_api.post(f"/commands/payments/{payment['id']}/refund")
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_declined_payment_is_402(payment_api):
    resp = await payment_api.post(
        "/commands/payments/process",
        json={
            "order_id": str(uuid4()),
            "user_id": "user-1",
            "amount": "10.00",
            "method": "BARTER",
        },
    )
    assert resp.status_code == 402
    assert resp.json()["code"] == "PAYMENT_DECLINED"


@pytest.mark.asyncio
async def test_payment_lookup_404(payment_api):
    resp = await payment_api.get(f"/queries/payments/order/{uuid4()}")
    assert resp.status_code == 404
    resp = await payment_api.get(f"/queries/payments/{uuid4()}")
    assert resp.status_code == 404
