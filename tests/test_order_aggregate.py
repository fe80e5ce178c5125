"""
Order Service - 注文集約のテスト
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from services.order.app.aggregate import (
    CANCELLED,
    CONFIRMED,
    DELIVERED,
    PENDING,
    PROCESSING,
    SHIPPED,
    STATUSES,
    TRANSITIONS,
    OrderAggregate,
    build_lines,
    total_of,
)
from services.order.app.errors import InvalidTransition, ValidationError


def test_total_is_sum_of_line_subtotals():
    lines = build_lines(
        [
            {"product_id": "p1", "quantity": 2, "unit_price": Decimal("10.00")},
            {"product_id": "p2", "quantity": 1, "unit_price": Decimal("70.00")},
        ]
    )
    assert [line.subtotal for line in lines] == [Decimal("20.00"), Decimal("70.00")]
    assert total_of(lines) == Decimal("90.00")


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"product_id": "p1", "quantity": 0, "unit_price": "1.00"}],
        [{"product_id": "p1", "quantity": 1, "unit_price": "-1.00"}],
        [{"product_id": "", "quantity": 1, "unit_price": "1.00"}],
    ],
)
def test_invalid_lines_are_rejected(items):
    with pytest.raises(ValidationError):
        build_lines(items)


def test_terminal_states_have_no_transitions():
    assert TRANSITIONS[DELIVERED] == frozenset()
    assert TRANSITIONS[CANCELLED] == frozenset()


def test_every_non_terminal_state_can_cancel():
    for status in STATUSES:
        if status in (DELIVERED, CANCELLED):
            continue
        assert CANCELLED in TRANSITIONS[status]


@pytest.mark.parametrize(
    "current, requested",
    [
        (PENDING, SHIPPED),
        (PENDING, PROCESSING),
        (CONFIRMED, DELIVERED),
        (DELIVERED, CANCELLED),
        (CANCELLED, PENDING),
    ],
)
def test_transitions_outside_the_table_are_rejected(current, requested):
    agg = OrderAggregate()
    agg.status = current
    with pytest.raises(InvalidTransition):
        agg.ensure_transition(requested)


def test_replay_rebuilds_state():
    order_id = uuid4()
    events = [
        {
            "event_type": "OrderCreated",
            "event_data": {
                "order_id": str(order_id),
                "user_id": "user-1",
                "lines": [
                    {
                        "product_id": "p1",
                        "quantity": 2,
                        "unit_price": "10.00",
                        "subtotal": "20.00",
                    }
                ],
                "total_amount": "20.00",
                "currency": "USD",
                "shipping_address": "1-1 Chiyoda, Tokyo",
                "timestamp": "2026-01-01T00:00:00Z",
            },
            "version": 1,
        },
        {
            "event_type": "OrderConfirmed",
            "event_data": {
                "order_id": str(order_id),
                "payment_id": "pay-1",
                "timestamp": "2026-01-01T00:00:01Z",
            },
            "version": 2,
        },
        {
            "event_type": "OrderStatusChanged",
            "event_data": {
                "order_id": str(order_id),
                "previous": CONFIRMED,
                "status": PROCESSING,
                "timestamp": "2026-01-01T00:00:02Z",
            },
            "version": 3,
        },
    ]
    agg = OrderAggregate.from_events(events)
    assert agg.id == order_id
    assert agg.status == PROCESSING
    assert agg.payment_id == "pay-1"
    assert agg.total_amount == Decimal("20.00")
    assert agg.lines[0].quantity == 2
    assert agg.version == 3
    assert agg.updated_at > agg.created_at
