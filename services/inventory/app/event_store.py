"""
Inventory Service - イベントストア

Order Service と同じ構造。マイクロサービスでは各サービスが
独自のデータストアを持つ（Database per Service パターン）。

在庫レコードの version とイベントの version は常に一致させる。
compare-and-swap に勝った書き込みだけが次の version のイベントを追記できる。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConcurrencyConflict
from .schema import event_store


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    new_version = expected_version + 1
    try:
        await session.execute(
            insert(event_store).values(
                aggregate_id=str(aggregate_id),
                aggregate_type=aggregate_type,
                event_type=event_type,
                event_data=json.dumps(event_data, default=str),
                version=new_version,
                created_at=datetime.now(timezone.utc),
            )
        )
    except IntegrityError as e:
        await session.rollback()
        raise ConcurrencyConflict(
            f"{aggregate_type} {aggregate_id} already has version {new_version}"
        ) from e
    return new_version


def _to_dict(row, with_aggregate: bool = False) -> dict:
    event = {
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
    if with_aggregate:
        event = {
            "aggregate_id": str(row.aggregate_id),
            "aggregate_type": row.aggregate_type,
            **event,
        }
    return event


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == str(aggregate_id))
        .order_by(event_store.c.version.asc())
    )
    return [_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(event_store).order_by(
            event_store.c.created_at.asc(), event_store.c.version.asc()
        )
    )
    return [_to_dict(row, with_aggregate=True) for row in result.fetchall()]
