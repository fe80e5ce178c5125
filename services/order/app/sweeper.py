"""
Order Service - PENDING 注文の掃除ジョブ

在庫引き当てと決済の間でプロセスが落ちると、在庫は引き当てられたまま
注文は PENDING で残る。このジョブは一定時間ごとにそうした注文を探して
フラグを立て、警告ログと OrderStalePending イベントを出す。

引き当ての自動解放はしない(どう扱うかはリコンサイル側の判断)。
"""

import asyncio
import logging
from datetime import timedelta

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from . import commands

logger = logging.getLogger(__name__)


async def run_sweeper(
    async_session_factory: sessionmaker,
    redis: aioredis.Redis,
    shutdown_event: asyncio.Event,
    pending_timeout: timedelta,
    interval_seconds: float,
) -> None:
    """shutdown_event がセットされるまで interval_seconds ごとに掃除する。"""
    logger.info(
        "Stale order sweeper started (timeout=%s, interval=%ss)",
        pending_timeout,
        interval_seconds,
    )
    while not shutdown_event.is_set():
        try:
            async with async_session_factory() as session:
                flagged = await commands.flag_stale_orders(
                    session, redis, pending_timeout
                )
            if flagged:
                logger.warning("Flagged %d stale PENDING orders", len(flagged))
        except Exception:
            logger.exception("Stale order sweep failed")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
